# SPDX-License-Identifier: MIT
"""
foundryup.targets

Install target (platform + architecture) detection and the per-platform
capability table. Everything that differs between operating systems is looked
up in ``CAPABILITIES`` so the rest of the code never branches on the host OS.
"""
from __future__ import annotations

import enum
import logging
import platform as _host
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError

__all__ = [
    "Platform",
    "Arch",
    "ArchiveFormat",
    "Capabilities",
    "CAPABILITIES",
    "Target",
]

logger = logging.getLogger("foundryup.targets")

OS_RELEASE = Path("/etc/os-release")


class Platform(str, enum.Enum):
    LINUX = "linux"
    ALPINE = "alpine"
    DARWIN = "darwin"
    WIN32 = "win32"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        s = value.strip().lower()
        if s == "linux":
            return cls.LINUX
        if s == "alpine":
            return cls.ALPINE
        if s in ("darwin", "macos", "mac"):
            return cls.DARWIN
        if s in ("win32", "windows") or s.startswith("mingw"):
            return cls.WIN32
        raise ConfigError(f"unsupported platform: {value}")

    @classmethod
    def detect(cls, *, os_release: Path = OS_RELEASE) -> "Platform":
        if sys.platform.startswith("linux"):
            return cls.ALPINE if _is_musl(os_release) else cls.LINUX
        if sys.platform == "darwin":
            return cls.DARWIN
        if sys.platform in ("win32", "cygwin"):
            return cls.WIN32
        raise ConfigError(f"unsupported platform: {sys.platform}")


class Arch(str, enum.Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"

    @classmethod
    def parse(cls, value: str) -> "Arch":
        s = value.strip().lower()
        if s in ("amd64", "x86_64", "x64"):
            return cls.AMD64
        if s in ("arm64", "aarch64"):
            return cls.ARM64
        raise ConfigError(f"unsupported architecture: {value}")

    @classmethod
    def detect(cls) -> "Arch":
        machine = _host.machine().lower()
        if machine in ("x86_64", "amd64"):
            # An x86_64 process on Apple silicon is running under Rosetta;
            # the native arm64 build is the one to install.
            return cls.ARM64 if _is_rosetta() else cls.AMD64
        if machine in ("aarch64", "arm64"):
            return cls.ARM64
        raise ConfigError(f"unsupported architecture: {machine}")


class ArchiveFormat(str, enum.Enum):
    TAR_GZ = "tar.gz"
    ZIP = "zip"


@dataclass(frozen=True)
class Capabilities:
    archive_format: ArchiveFormat
    exe_suffix: str
    posix_permissions: bool
    symlink_local_builds: bool
    replace_running_by_rename: bool

    @property
    def archive_ext(self) -> str:
        return self.archive_format.value

    def binary_filename(self, name: str) -> str:
        if self.exe_suffix and not name.endswith(self.exe_suffix):
            return name + self.exe_suffix
        return name


_POSIX = Capabilities(
    archive_format=ArchiveFormat.TAR_GZ,
    exe_suffix="",
    posix_permissions=True,
    symlink_local_builds=True,
    replace_running_by_rename=True,
)

CAPABILITIES: dict[Platform, Capabilities] = {
    Platform.LINUX: _POSIX,
    Platform.ALPINE: _POSIX,
    Platform.DARWIN: _POSIX,
    Platform.WIN32: Capabilities(
        archive_format=ArchiveFormat.ZIP,
        exe_suffix=".exe",
        posix_permissions=False,
        symlink_local_builds=False,
        replace_running_by_rename=False,
    ),
}


@dataclass(frozen=True)
class Target:
    platform: Platform
    arch: Arch

    @classmethod
    def detect(
        cls,
        platform_override: Optional[str] = None,
        arch_override: Optional[str] = None,
    ) -> "Target":
        plat = Platform.parse(platform_override) if platform_override else Platform.detect()
        arch = Arch.parse(arch_override) if arch_override else Arch.detect()
        logger.debug("target: platform=%s arch=%s", plat.value, arch.value)
        return cls(platform=plat, arch=arch)

    @property
    def capabilities(self) -> Capabilities:
        return CAPABILITIES[self.platform]

    def archive_name(self, prefix: str, version: str) -> str:
        """``<prefix>_<version>_<platform>_<arch>.<ext>``"""
        return f"{self.stem(prefix, version)}.{self.capabilities.archive_ext}"

    def stem(self, prefix: str, version: str) -> str:
        return f"{prefix}_{version}_{self.platform.value}_{self.arch.value}"


def _is_musl(os_release: Path) -> bool:
    try:
        return "alpine" in os_release.read_text(encoding="utf-8", errors="replace").lower()
    except OSError:
        return False


def _is_rosetta() -> bool:
    if sys.platform != "darwin":
        return False
    try:
        proc = subprocess.run(
            ["sysctl", "-n", "sysctl.proc_translated"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.stdout.decode("utf-8", errors="replace").strip() == "1"
