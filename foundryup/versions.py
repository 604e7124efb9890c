# SPDX-License-Identifier: MIT
"""
foundryup.versions

The on-disk version store: ``<root>/versions/<owner>/<repo>/<tag>/`` holds one
complete set of binaries per tag, and ``<root>/bin/`` holds full copies of the
active set.

VersionStore(ctx)
    version_dir(tag, repository_id=None) -> Path
    reset_version_dir(tag, repository_id=None) -> Path
    mark_unverified(tag, repository_id=None) / mark_verified(...)
    migrate_legacy_layout() -> list[Path]
    activate(tag, repository_id=None) -> list[Path]
    list_installed() -> list[InstalledVersion]
    print_installed() -> None
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .config import PRIMARY_PROFILE, Context, PathLayout
from .errors import FilesystemError, IntegrityError, NotInstalledError

__all__ = [
    "normalize_version",
    "probe_version",
    "InstalledBinary",
    "InstalledVersion",
    "VersionStore",
]

logger = logging.getLogger("foundryup.versions")

VERSION_PROBE_TIMEOUT = 10

# Present while a version directory holds files that have not (yet) passed
# verification; activation refuses such directories.
UNVERIFIED_MARKER = ".unverified"

SHADOW_WARNING = """\
There are multiple binaries with the name '{name}' present in your 'PATH'.
This may be the result of installing '{name}' using another method,
like Cargo or other package managers.
You may need to run 'rm {which_path}' or move '{bin_dir}'
in your 'PATH' to allow the newly installed version to take precedence!"""


def normalize_version(value: str) -> str:
    """
    Map a user-supplied version to its tag.

    >>> normalize_version("nightly-2024-01-01")
    'nightly'
    >>> normalize_version("1.5.0")
    'v1.5.0'
    >>> normalize_version("stable")
    'stable'
    """
    if value.startswith("nightly"):
        return "nightly"
    if value[:1].isdigit():
        return f"v{value}"
    return value


def probe_version(path: Path) -> Optional[str]:
    """Run ``<bin> -V`` and return its trimmed stdout, or None if that fails."""
    try:
        proc = subprocess.run(
            [str(path), "-V"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=VERSION_PROBE_TIMEOUT,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("probe: %s -V failed: %s", path, e)
        return None
    out = proc.stdout.decode("utf-8", errors="replace").strip()
    return out or None


@dataclass(frozen=True)
class InstalledBinary:
    name: str
    path: Path
    reported_version: Optional[str]

    def describe(self) -> str:
        return self.reported_version or f"{self.name} (unknown version)"


@dataclass(frozen=True)
class InstalledVersion:
    tag: str
    repository_id: Optional[str]
    path: Path
    binaries: List[InstalledBinary] = field(default_factory=list)

    @property
    def label(self) -> str:
        if self.repository_id is None or self.repository_id == PRIMARY_PROFILE.repository_id:
            return self.tag
        return f"{self.tag} ({self.repository_id})"


class VersionStore:
    """Creates, inspects and activates version directories for one ``Context``."""

    def __init__(self, ctx: Context, *, binary_names: Optional[Sequence[str]] = None) -> None:
        self.ctx = ctx
        # Activation and listing cover the primary network's full set; smaller
        # sets simply have some files absent.
        self.binary_names = tuple(binary_names or PRIMARY_PROFILE.binary_names)

    @property
    def layout(self) -> PathLayout:
        return self.ctx.layout

    def version_dir(self, tag: str, repository_id: Optional[str] = None) -> Path:
        return self.ctx.version_dir(tag, repository_id)

    def exists(self, tag: str, repository_id: Optional[str] = None) -> bool:
        return self.version_dir(tag, repository_id).is_dir()

    def reset_version_dir(self, tag: str, repository_id: Optional[str] = None) -> Path:
        """Delete any previous contents and return a fresh, empty version directory."""
        vdir = self.version_dir(tag, repository_id)
        try:
            if vdir.exists():
                logger.debug("versions: removing stale %s", vdir)
                shutil.rmtree(vdir)
            vdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"failed to reset version directory {vdir}: {e}") from e
        return vdir

    def mark_unverified(self, tag: str, repository_id: Optional[str] = None) -> None:
        marker = self.version_dir(tag, repository_id) / UNVERIFIED_MARKER
        try:
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.touch()
        except OSError as e:
            raise FilesystemError(f"failed to write {marker}: {e}") from e

    def mark_verified(self, tag: str, repository_id: Optional[str] = None) -> None:
        marker = self.version_dir(tag, repository_id) / UNVERIFIED_MARKER
        try:
            marker.unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError(f"failed to remove {marker}: {e}") from e

    def is_unverified(self, tag: str, repository_id: Optional[str] = None) -> bool:
        return (self.version_dir(tag, repository_id) / UNVERIFIED_MARKER).exists()

    # ---- legacy layout -------------------------------------------------------

    def _holds_binaries(self, d: Path) -> bool:
        caps = self.ctx.capabilities
        return any((d / caps.binary_filename(n)).is_file() for n in self.binary_names)

    def migrate_legacy_layout(self) -> List[Path]:
        """
        Move flat ``versions/<tag>/`` directories under the primary repository.

        Only directories that directly contain binaries are moved. Owner
        directories of the nested layout never do, so they are left alone.
        """
        versions_dir = self.layout.versions_dir
        if not versions_dir.is_dir():
            return []
        dest_root = versions_dir / PRIMARY_PROFILE.repository_id
        moved: List[Path] = []
        for child in sorted(versions_dir.iterdir()):
            if not child.is_dir() or not self._holds_binaries(child):
                continue
            dest = dest_root / child.name
            if dest.exists():
                logger.warning("legacy version %s already migrated; leaving %s in place", child.name, child)
                continue
            try:
                dest_root.mkdir(parents=True, exist_ok=True)
                shutil.move(str(child), str(dest))
            except OSError as e:
                raise FilesystemError(f"failed to migrate {child} → {dest}: {e}") from e
            logger.debug("versions: migrated %s → %s", child, dest)
            moved.append(dest)
        if moved:
            logger.info("migrated %d version(s) to %s", len(moved), dest_root)
        return moved

    # ---- activation ----------------------------------------------------------

    def _install_copy(self, src: Path, dest: Path) -> None:
        # Copy next to the destination, then rename over it; an interrupted
        # copy never leaves a truncated active binary.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            shutil.copyfile(src, tmp)
            if self.ctx.capabilities.posix_permissions:
                os.chmod(tmp, 0o755)
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def activate(self, tag: str, repository_id: Optional[str] = None) -> List[Path]:
        """
        Copy every binary of ``tag`` into the bin directory.

        Raises
        ------
        NotInstalledError if the version directory does not exist.
        IntegrityError if the directory failed verification or was left
        incomplete by an interrupted install.
        FilesystemError when copying or chmod-ing fails.
        """
        vdir = self.version_dir(tag, repository_id)
        if not vdir.is_dir():
            raise NotInstalledError(tag)
        if self.is_unverified(tag, repository_id):
            raise IntegrityError(
                f"version {tag} failed verification or is incomplete; "
                f"reinstall it with 'foundryup --install {tag}'"
            )

        caps = self.ctx.capabilities
        self.layout.bin_dir.mkdir(parents=True, exist_ok=True)
        activated: List[Path] = []
        for name in self.binary_names:
            src = vdir / caps.binary_filename(name)
            if not src.is_file():
                continue
            dest = self.ctx.bin_path(name)
            try:
                self._install_copy(src, dest)
            except OSError as e:
                raise FilesystemError(f"failed to activate {src} → {dest}: {e}") from e
            activated.append(dest)
            logger.info("use - %s", probe_version(dest) or name)
            self._warn_if_shadowed(name, dest)
        return activated

    def _warn_if_shadowed(self, name: str, dest: Path) -> None:
        found = shutil.which(self.ctx.capabilities.binary_filename(name))
        if not found:
            return
        try:
            same = Path(found).resolve() == dest.resolve()
        except OSError:
            same = False
        if not same:
            logger.warning(
                "\n%s",
                SHADOW_WARNING.format(name=name, which_path=found, bin_dir=self.layout.bin_dir),
            )

    # ---- listing -------------------------------------------------------------

    def _binaries_in(self, d: Path) -> List[InstalledBinary]:
        caps = self.ctx.capabilities
        out: List[InstalledBinary] = []
        for name in self.binary_names:
            p = d / caps.binary_filename(name)
            if p.exists():
                out.append(InstalledBinary(name=name, path=p, reported_version=probe_version(p)))
        return out

    def _version_dirs(self) -> List[tuple[Optional[str], Path]]:
        """(repository id, tag dir) pairs; flat legacy dirs carry no repository id."""
        found: List[tuple[Optional[str], Path]] = []
        for first in sorted(self.layout.versions_dir.iterdir()):
            if not first.is_dir():
                continue
            if self._holds_binaries(first):
                found.append((None, first))
                continue
            for repo in sorted(first.iterdir()):
                if not repo.is_dir():
                    continue
                for tag_dir in sorted(repo.iterdir()):
                    if tag_dir.is_dir():
                        found.append((f"{first.name}/{repo.name}", tag_dir))
        return found

    def list_installed(self) -> List[InstalledVersion]:
        """
        Every installed version with the self-reported version of each binary.

        Without a versions directory, the active binaries are reported instead
        as a single entry tagged ``bin``.
        """
        versions_dir = self.layout.versions_dir
        if not versions_dir.is_dir():
            return [
                InstalledVersion(
                    tag="bin",
                    repository_id=None,
                    path=self.layout.bin_dir,
                    binaries=self._binaries_in(self.layout.bin_dir),
                )
            ]
        return [
            InstalledVersion(tag=d.name, repository_id=repo, path=d, binaries=self._binaries_in(d))
            for repo, d in self._version_dirs()
        ]

    def print_installed(self) -> None:
        if not self.layout.versions_dir.is_dir():
            for version in self.list_installed():
                for b in version.binaries:
                    logger.info("- %s", b.describe())
            return
        for version in self.list_installed():
            logger.info(version.label)
            for b in version.binaries:
                logger.info("- %s", b.describe())
