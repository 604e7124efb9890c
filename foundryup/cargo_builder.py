# foundryup/cargo_builder.py
# SPDX-License-Identifier: MIT
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import BuildError, FilesystemError
from .targets import Capabilities

logger = logging.getLogger("foundryup.cargo_builder")


def release_dir(checkout: Path) -> Path:
    return checkout / "target" / "release"


async def _run_cargo(cmd: List[str], cwd: Path) -> None:
    """Run cargo with the user's terminal attached; raise BuildError on a non-zero exit."""
    # Use a shortened cwd for cleaner logs
    short_cwd = cwd.name if len(str(cwd)) > 40 else str(cwd)
    logger.debug("build: executing -> `%s` in %s", " ".join(cmd), short_cwd)
    try:
        proc = await asyncio.create_subprocess_exec(*cmd, cwd=str(cwd))
    except FileNotFoundError as e:
        raise BuildError(
            f"command not found: `{cmd[0]}`. Is it installed and in the PATH?", command=cmd
        ) from e
    except OSError as e:
        raise BuildError(f"failed to run {cmd[0]}: {e}", command=cmd) from e
    returncode = await proc.wait()
    if returncode != 0:
        raise BuildError(f"cargo build failed with exit code {returncode}", command=cmd, returncode=returncode)


async def run_cargo_build(checkout: Path, *, jobs: Optional[int] = None, cargo_bin: str = "cargo") -> Path:
    """
    ``cargo build --bins --release [--jobs N]`` in ``checkout``.

    Returns the directory holding the produced binaries.
    """
    cmd = [cargo_bin, "build", "--bins", "--release"]
    if jobs is not None:
        cmd += ["--jobs", str(jobs)]
    await _run_cargo(cmd, checkout)
    return release_dir(checkout)


def move_binaries(
    built: Path,
    version_dir: Path,
    binary_names: Sequence[str],
    caps: Capabilities,
) -> List[Path]:
    """Move produced binaries into ``version_dir``; names cargo did not produce are skipped."""
    moved: List[Path] = []
    try:
        version_dir.mkdir(parents=True, exist_ok=True)
        for name in binary_names:
            filename = caps.binary_filename(name)
            src = built / filename
            if not src.exists():
                logger.debug("build: %s not produced, skipping", filename)
                continue
            dest = version_dir / filename
            shutil.move(str(src), str(dest))
            moved.append(dest)
    except OSError as e:
        raise FilesystemError(f"failed to move build output into {version_dir}: {e}") from e
    return moved


def link_binaries(
    built: Path,
    bin_dir: Path,
    binary_names: Sequence[str],
    caps: Capabilities,
) -> List[Path]:
    """Point ``bin_dir`` at a local build: symlinks where supported, copies otherwise."""
    linked: List[Path] = []
    try:
        bin_dir.mkdir(parents=True, exist_ok=True)
        for name in binary_names:
            filename = caps.binary_filename(name)
            src = built / filename
            if not src.exists():
                logger.debug("build: %s not produced, skipping", filename)
                continue
            dest = bin_dir / filename
            if dest.exists() or dest.is_symlink():
                dest.unlink()
            if caps.symlink_local_builds:
                os.symlink(src.resolve(), dest)
            else:
                shutil.copyfile(src, dest)
            linked.append(dest)
    except OSError as e:
        raise FilesystemError(f"failed to link build output into {bin_dir}: {e}") from e
    return linked
