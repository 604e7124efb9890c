# SPDX-License-Identifier: MIT
"""
foundryup.errors

Exception taxonomy shared by every component. All of them derive from
``FoundryupError`` so the CLI can report any expected failure with a single
``except`` clause and exit non-zero.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

__all__ = [
    "FoundryupError",
    "ConfigError",
    "NetworkError",
    "IntegrityError",
    "BuildError",
    "NotInstalledError",
    "FilesystemError",
    "BinaryInUseError",
]


class FoundryupError(RuntimeError):
    """Base class for all foundryup failures."""


class ConfigError(FoundryupError):
    """Raised when the root directory or the install target cannot be resolved."""


class NetworkError(FoundryupError):
    """
    Raised when an HTTP request fails.

    Attributes:
        url (str|None): The URL that was requested.
        status (int): HTTP status code (0 for transport errors).
    """

    def __init__(self, message: str, *, url: Optional[str] = None, status: int = 0) -> None:
        self.url = url
        self.status = status
        super().__init__(message)


class IntegrityError(FoundryupError):
    """
    Raised when an attestation document is malformed or a binary does not
    match its attested digest.

    Attributes:
        failed (list[str]): Binaries that failed verification (may be empty for
            format errors).
    """

    def __init__(self, message: str, *, failed: Iterable[str] = ()) -> None:
        self.failed = list(failed)
        super().__init__(message)


class BuildError(FoundryupError):
    """Raised when git or cargo exits non-zero (or cannot be started)."""

    def __init__(self, message: str, *, command: Sequence[str] = (), returncode: Optional[int] = None) -> None:
        self.command = list(command)
        self.returncode = returncode
        super().__init__(message)


class NotInstalledError(FoundryupError):
    """Raised when activation is requested for a version that is not on disk."""

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"version {tag} not installed")


class FilesystemError(FoundryupError):
    """Raised when creating, copying or chmod-ing files in the foundry tree fails."""


class BinaryInUseError(FoundryupError):
    """Raised when a managed binary is running and would be overwritten."""
