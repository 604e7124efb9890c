# SPDX-License-Identifier: MIT
"""
foundryup.self_update

Checks the manager's own latest release and replaces the running executable
with it.

Replacing a running executable differs per platform, so it goes through an
``ExecutableReplacer`` chosen from the capability table:

- ``RenameReplacer``: rename the staged file over the old one (POSIX keeps the
  running inode alive).
- ``BackupCopyReplacer``: move the running file aside to ``<stem>.old.exe``,
  then copy the new one into place (Windows refuses to overwrite it).
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, ValidationError

from . import __version__
from .archivefetch import ArchiveTransport
from .config import GITHUB_API_URL, GITHUB_URL, MANAGER_NAME, MANAGER_REPO, Context
from .errors import FilesystemError, FoundryupError, NetworkError
from .targets import Capabilities

__all__ = [
    "ReleaseMetadata",
    "ExecutableReplacer",
    "RenameReplacer",
    "BackupCopyReplacer",
    "replacer_for",
    "SelfUpdater",
    "BackgroundUpdateCheck",
]

logger = logging.getLogger("foundryup.self_update")

OUT_OF_DATE_NOTICE = """
Your installation of foundryup is out of date.

Installed: {current} → Latest: {latest}

To update, run:

  foundryup --update

Updating is highly recommended as it gives you access to the latest features and bug fixes.
"""


class ReleaseMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag_name: str


# ------------------------------ replacers ----------------------------------- #

class ExecutableReplacer(Protocol):
    def replace(self, new: Path, current: Path) -> None: ...


class RenameReplacer:
    def replace(self, new: Path, current: Path) -> None:
        os.replace(new, current)


class BackupCopyReplacer:
    @staticmethod
    def backup_path(current: Path) -> Path:
        return current.with_name(f"{current.stem}.old.exe")

    def replace(self, new: Path, current: Path) -> None:
        backup = self.backup_path(current)
        backup.unlink(missing_ok=True)
        if current.exists():
            os.replace(current, backup)
        shutil.copyfile(new, current)


def replacer_for(caps: Capabilities) -> ExecutableReplacer:
    return RenameReplacer() if caps.replace_running_by_rename else BackupCopyReplacer()


# ------------------------------ updater ------------------------------------- #

class SelfUpdater:
    def __init__(
        self,
        ctx: Context,
        transport: ArchiveTransport,
        *,
        current_version: str = __version__,
        executable: Optional[Path] = None,
        replacer: Optional[ExecutableReplacer] = None,
    ) -> None:
        self.ctx = ctx
        self.transport = transport
        self.current_version = current_version
        self.executable = executable or ctx.bin_path(MANAGER_NAME)
        self.replacer = replacer or replacer_for(ctx.capabilities)

    @property
    def metadata_url(self) -> str:
        return f"{GITHUB_API_URL}/repos/{MANAGER_REPO}/releases/latest"

    def artifact_url(self, new_version: str) -> str:
        target = self.ctx.target
        name = f"{MANAGER_NAME}_{target.platform.value}_{target.arch.value}"
        return f"{GITHUB_URL}/{MANAGER_REPO}/releases/download/v{new_version}/{name}"

    async def check_for_update(self) -> Optional[str]:
        """
        Latest release version if it is strictly newer than the running one.

        An unreachable release API or an unparsable remote version counts as
        "no update". Metadata without ``tag_name`` is an error.
        """
        url = self.metadata_url
        try:
            body = await self.transport.fetch_to_string(url)
        except NetworkError as e:
            logger.debug("failed to check for updates: %s", e)
            return None
        try:
            meta = ReleaseMetadata.model_validate_json(body)
        except ValidationError as e:
            raise NetworkError(f"missing tag_name in release metadata from {url}", url=url) from e

        remote = meta.tag_name.lstrip("v")
        try:
            newer = Version(remote) > Version(self.current_version)
        except InvalidVersion:
            logger.debug("ignoring unparsable release version %r", meta.tag_name)
            return None
        return remote if newer else None

    async def run(self) -> Optional[str]:
        """Install the latest release over the current executable; returns the new version, if any."""
        logger.info("updating foundryup...")
        new_version = await self.check_for_update()
        if new_version is None:
            logger.info("foundryup is already up to date (installed: %s)", self.current_version)
            return None

        bin_dir = self.executable.parent
        try:
            bin_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"failed to create {bin_dir}: {e}") from e

        # Staged next to the executable so the final rename stays on one filesystem.
        with tempfile.TemporaryDirectory(prefix=".foundryup-update-", dir=bin_dir) as tmp:
            staged = Path(tmp) / f"{MANAGER_NAME}_new"
            await self.transport.fetch_to_file(self.artifact_url(new_version), staged)
            try:
                if self.ctx.capabilities.posix_permissions:
                    os.chmod(staged, 0o755)
                self.replacer.replace(staged, self.executable)
            except OSError as e:
                raise FilesystemError(f"failed to replace {self.executable}: {e}") from e

        logger.info("successfully updated foundryup: %s → %s", self.current_version, new_version)
        return new_version


class BackgroundUpdateCheck:
    """
    Runs ``check_for_update`` alongside the main operation.

    ``join()`` is awaited exactly once at the end of the run and only ever
    logs; a failed check never changes the outcome of the run.
    """

    def __init__(self, updater: SelfUpdater) -> None:
        self.updater = updater
        self._task: Optional[asyncio.Task[Optional[str]]] = None

    def start(self) -> None:
        logger.info("checking if foundryup is up to date...")
        self._task = asyncio.create_task(self.updater.check_for_update())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def join(self) -> Optional[str]:
        if self._task is None:
            return None
        task, self._task = self._task, None
        try:
            latest = await task
        except asyncio.CancelledError:
            return None
        except FoundryupError as e:
            logger.warning("Could not check for updates: %s", e)
            return None
        if latest is None:
            logger.info("foundryup is up to date.")
        else:
            logger.info(OUT_OF_DATE_NOTICE.format(current=self.updater.current_version, latest=latest))
        return latest
