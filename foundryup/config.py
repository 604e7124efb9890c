# SPDX-License-Identifier: MIT
"""
foundryup.config

Static network profiles, the on-disk path layout, and the immutable ``Context``
that carries both (plus the install target) through every component.

``resolve()`` is the only place that reads the process environment.
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError, FilesystemError
from .targets import Capabilities, Target

__all__ = [
    "Network",
    "NetworkProfile",
    "FOUNDRY",
    "TEMPO",
    "PRIMARY_PROFILE",
    "profile_for",
    "PathLayout",
    "Context",
    "resolve",
    "http_timeout",
    "tool_bin",
]

logger = logging.getLogger("foundryup.config")

MANAGER_NAME = "foundryup"
MANAGER_REPO = "foundry-rs/foundryup"
GITHUB_URL = "https://github.com"
GITHUB_API_URL = "https://api.github.com"
DEFAULT_HTTP_TIMEOUT = 60.0


class Network(str, enum.Enum):
    TEMPO = "tempo"


@dataclass(frozen=True)
class NetworkProfile:
    repository_id: str
    binary_names: tuple[str, ...]
    archive_prefix: str
    default_version: str
    display_name: str
    has_attestation: bool
    # Networks that publish a single manpage set pin it here.
    manpage_version: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repository_id.split("/", 1)[0]


FOUNDRY = NetworkProfile(
    repository_id="foundry-rs/foundry",
    binary_names=("forge", "cast", "anvil", "chisel"),
    archive_prefix="foundry",
    default_version="stable",
    display_name="foundry",
    has_attestation=True,
)

TEMPO = NetworkProfile(
    repository_id="tempoxyz/tempo-foundry",
    binary_names=("forge", "cast"),
    archive_prefix="foundry",
    default_version="nightly",
    display_name="tempo-foundry",
    has_attestation=False,
    manpage_version="nightly",
)

PRIMARY_PROFILE = FOUNDRY

_PROFILES: dict[Optional[Network], NetworkProfile] = {
    None: FOUNDRY,
    Network.TEMPO: TEMPO,
}


def profile_for(network: Optional[Network]) -> NetworkProfile:
    return _PROFILES[network]


@dataclass(frozen=True)
class PathLayout:
    root_dir: Path
    versions_dir: Path
    bin_dir: Path
    man_dir: Path

    @classmethod
    def from_root(cls, root: Path) -> "PathLayout":
        return cls(
            root_dir=root,
            versions_dir=root / "versions",
            bin_dir=root / "bin",
            man_dir=root / "share" / "man" / "man1",
        )

    def ensure_directories(self) -> None:
        """Create the versions/bin/man directories; safe to call repeatedly."""
        for d in (self.versions_dir, self.bin_dir, self.man_dir):
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"failed to create directory {d}: {e}") from e

    def repo_dir(self, repository_id: str) -> Path:
        """Checkout location used by source builds."""
        return self.root_dir / repository_id


@dataclass(frozen=True)
class Context:
    """Everything a component needs to know about this run; never mutated."""

    layout: PathLayout
    profile: NetworkProfile
    target: Target
    network: Optional[Network] = None

    @property
    def capabilities(self) -> Capabilities:
        return self.target.capabilities

    @property
    def is_alternate(self) -> bool:
        return self.network is not None

    def version_dir(self, tag: str, repository_id: Optional[str] = None) -> Path:
        return self.layout.versions_dir / (repository_id or self.profile.repository_id) / tag

    def bin_path(self, name: str) -> Path:
        return self.layout.bin_dir / self.capabilities.binary_filename(name)

    def with_target(self, target: Target) -> "Context":
        return Context(layout=self.layout, profile=self.profile, target=target, network=self.network)


def resolve(
    override_root: Optional[str | os.PathLike[str]] = None,
    network: Optional[Network] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[PathLayout, NetworkProfile]:
    """
    Resolve the path layout and network profile for this run.

    Root directory priority: ``override_root`` > ``FOUNDRY_DIR`` >
    ``$XDG_CONFIG_HOME/.foundry`` > ``~/.foundry``.

    Raises:
        ConfigError: when no root can be determined.
    """
    env = os.environ if env is None else env
    root: Optional[Path] = None

    if override_root:
        root = Path(override_root)
    elif env.get("FOUNDRY_DIR"):
        root = Path(env["FOUNDRY_DIR"])
    else:
        base: Optional[Path] = None
        if env.get("XDG_CONFIG_HOME"):
            base = Path(env["XDG_CONFIG_HOME"])
        else:
            try:
                base = Path.home()
            except (RuntimeError, KeyError):
                base = None
        if base is None:
            raise ConfigError("could not determine home directory")
        root = base / ".foundry"

    layout = PathLayout.from_root(root.expanduser())
    profile = profile_for(network)
    logger.debug("config: root=%s network=%s repo=%s", layout.root_dir, network, profile.repository_id)
    return layout, profile


def http_timeout(env: Optional[Mapping[str, str]] = None) -> float:
    env = os.environ if env is None else env
    raw = (env.get("FOUNDRYUP_HTTP_TIMEOUT") or "").strip()
    if not raw:
        return DEFAULT_HTTP_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        logger.debug("config: ignoring invalid FOUNDRYUP_HTTP_TIMEOUT=%r", raw)
        return DEFAULT_HTTP_TIMEOUT
    return value if value > 0 else DEFAULT_HTTP_TIMEOUT


def tool_bin(name: str, env: Optional[Mapping[str, str]] = None) -> str:
    """Executable for an external tool, e.g. ``tool_bin("git")`` honours FOUNDRYUP_GIT_BIN."""
    env = os.environ if env is None else env
    return env.get(f"FOUNDRYUP_{name.upper()}_BIN") or name
