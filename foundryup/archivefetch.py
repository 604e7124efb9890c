# SPDX-License-Identifier: MIT
"""
foundryup.archivefetch

HTTP transport and archive handling for release artifacts.

Features
- Streaming HTTP(S) download via httpx (async) with redirect support and timeout
- Progress rendering with rich (percentage when the size is known, byte counter otherwise)
- Unpack for .tar.gz / .zip with path traversal protection
- Streaming SHA-256 digests

Public API
----------
ArchiveTransport(client=None, *, timeout=60, quiet=False)
    await fetch_to_file(url, dest) -> None
    await fetch_to_string(url) -> str
    extract(archive, dest, fmt, *, posix_permissions=True) -> None
    compute_digest(path) -> str
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TransferSpeedColumn,
)

from . import __version__
from .errors import FilesystemError, NetworkError
from .targets import ArchiveFormat

__all__ = [
    "ArchiveTransport",
    "compute_digest",
    "extract_archive",
]

_log = logging.getLogger("foundryup.archivefetch")

CHUNK_SIZE = 64 * 1024
USER_AGENT = f"foundryup/{__version__}"


def _short(path: Path | str, maxlen: int = 120) -> str:
    s = str(path)
    return s if len(s) <= maxlen else ("…" + s[-(maxlen - 1) :])


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _safe_destination(target_dir: Path, name: str) -> Optional[Path]:
    """Resolved destination for an archive member, or None if it escapes ``target_dir``."""
    pure = PurePosixPath(name.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts or (pure.parts and pure.parts[0].endswith(":")):
        return None
    root = target_dir.resolve()
    dest = (root / pure).resolve()
    if dest != root and not dest.is_relative_to(root):
        return None
    return dest


def _safe_extract_zip(zf: zipfile.ZipFile, target_dir: Path, *, posix_permissions: bool) -> int:
    """
    Extracts ZIP with protection against path traversal ("zip slip").
    Unsafe entries are skipped.
    """
    written = 0
    for member in zf.infolist():
        dest = _safe_destination(target_dir, member.filename)
        if dest is None:
            _log.warning("skipping unsafe zip entry: %s", member.filename)
            continue
        if member.is_dir():
            dest.mkdir(parents=True, exist_ok=True)
            continue
        _ensure_parent(dest)
        with zf.open(member, "r") as src, open(dest, "wb") as out:
            shutil.copyfileobj(src, out, CHUNK_SIZE)
        mode = (member.external_attr >> 16) & 0o777
        if posix_permissions and mode:
            os.chmod(dest, mode)
        written += 1
    return written


def _safe_extract_tar(tf: tarfile.TarFile, target_dir: Path, *, posix_permissions: bool) -> int:
    """
    Extracts a streamed TAR with protection against path traversal ("tar slip").
    Links and special files are skipped.
    """
    written = 0
    for member in tf:
        dest = _safe_destination(target_dir, member.name)
        if dest is None:
            _log.warning("skipping unsafe tar entry: %s", member.name)
            continue
        if member.isdir():
            dest.mkdir(parents=True, exist_ok=True)
            continue
        if not member.isfile():
            _log.debug("tar: skipping non-regular member %s", member.name)
            continue
        extracted = tf.extractfile(member)
        if extracted is None:
            continue
        _ensure_parent(dest)
        with extracted as src, open(dest, "wb") as out:
            shutil.copyfileobj(src, out, CHUNK_SIZE)
        if posix_permissions:
            os.chmod(dest, member.mode & 0o777)
        written += 1
    return written


def _mark_top_level_executable(target_dir: Path) -> None:
    for child in target_dir.iterdir():
        if child.is_file() and not child.is_symlink():
            os.chmod(child, 0o755)


def extract_archive(
    archive: Path | str,
    dest: Path | str,
    fmt: ArchiveFormat,
    *,
    posix_permissions: bool = True,
) -> None:
    """
    Unpack ``archive`` into ``dest`` (created if necessary).

    On POSIX targets every top-level regular file ends up 0755 afterwards,
    whatever the archive recorded.

    Raises
    ------
    FilesystemError for corrupt archives or write failures.
    """
    archive = Path(archive)
    target = Path(dest)
    try:
        target.mkdir(parents=True, exist_ok=True)
        if fmt is ArchiveFormat.ZIP:
            with zipfile.ZipFile(archive) as zf:
                n = _safe_extract_zip(zf, target, posix_permissions=posix_permissions)
        else:
            # "r|gz" reads the gzip stream sequentially, never seeking.
            with tarfile.open(archive, mode="r|gz") as tf:
                n = _safe_extract_tar(tf, target, posix_permissions=posix_permissions)
        if posix_permissions:
            _mark_top_level_executable(target)
    except zipfile.BadZipFile as e:
        raise FilesystemError(f"bad zip file {_short(archive)}: {e}") from e
    except tarfile.TarError as e:
        raise FilesystemError(f"bad tar file {_short(archive)}: {e}") from e
    except OSError as e:
        raise FilesystemError(f"failed to extract {_short(archive)} into {_short(target)}: {e}") from e
    _log.debug("extract: %d files from %s → %s", n, archive.name, _short(target))


def compute_digest(path: Path | str) -> str:
    """Lowercase hex SHA-256 of a file, read in chunks."""
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
    except OSError as e:
        raise FilesystemError(f"failed to read {_short(path)}: {e}") from e
    return h.hexdigest()


class ArchiveTransport:
    """
    Async HTTP transport used for every download.

    A caller-supplied ``httpx.AsyncClient`` is used as-is and never closed here;
    otherwise one is created lazily and closed by ``aclose()``.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 60.0,
        quiet: bool = False,
        console: Optional[Console] = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.quiet = quiet
        self.console = console or Console(stderr=True)

    async def __aenter__(self) -> "ArchiveTransport":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _progress(self) -> Progress:
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=self.console,
            transient=True,
            disable=self.quiet,
        )

    async def fetch_to_file(self, url: str, dest: Path | str) -> None:
        """
        Stream ``url`` into ``dest`` chunk by chunk.

        Raises
        ------
        NetworkError on a non-2xx status or a transport failure.
        FilesystemError when ``dest`` cannot be written.
        """
        dest = Path(dest)
        _log.debug("http: GET %s → %s", url, _short(dest))
        received = 0
        try:
            async with self.client.stream("GET", url) as resp:
                if not resp.is_success:
                    raise NetworkError(f"http {resp.status_code} for {url}", url=url, status=resp.status_code)
                length = resp.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else None
                _ensure_parent(dest)
                with self._progress() as progress, open(dest, "wb") as out:
                    task = progress.add_task(dest.name, total=total)
                    async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                        out.write(chunk)
                        received += len(chunk)
                        progress.update(task, advance=len(chunk))
        except httpx.HTTPError as e:
            raise NetworkError(f"download failed for {url}: {e}", url=url) from e
        except OSError as e:
            raise FilesystemError(f"failed to write {_short(dest)}: {e}") from e
        _log.debug("http: downloaded %d bytes from %s", received, url)

    async def fetch_to_string(self, url: str) -> str:
        """GET ``url`` and return the decoded body."""
        _log.debug("http: GET %s", url)
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"request failed for {url}: {e}", url=url) from e
        if not resp.is_success:
            raise NetworkError(f"http {resp.status_code} for {url}", url=url, status=resp.status_code)
        return resp.text

    @staticmethod
    def extract(
        archive: Path | str,
        dest: Path | str,
        fmt: ArchiveFormat,
        *,
        posix_permissions: bool = True,
    ) -> None:
        extract_archive(archive, dest, fmt, posix_permissions=posix_permissions)

    @staticmethod
    def compute_digest(path: Path | str) -> str:
        return compute_digest(path)
