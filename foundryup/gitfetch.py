# SPDX-License-Identifier: MIT
# foundryup/gitfetch.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import GITHUB_URL
from .errors import BuildError, FilesystemError

__all__ = ["SourceRef", "checkout_source", "resolve_ref", "version_label"]

logger = logging.getLogger("foundryup.gitfetch")

DEFAULT_BRANCH = "master"


@dataclass(frozen=True)
class SourceRef:
    """What to check out: a git ref, optionally pinned to a commit on top of it."""

    ref: str
    commit: Optional[str] = None
    pr: Optional[int] = None
    branch: Optional[str] = None


def resolve_ref(*, branch: Optional[str] = None, pr: Optional[int] = None, commit: Optional[str] = None) -> SourceRef:
    if pr is not None:
        ref = f"refs/pull/{pr}/head"
    else:
        ref = branch or DEFAULT_BRANCH
    return SourceRef(ref=ref, commit=commit, pr=pr, branch=branch)


def version_label(repository_id: str, source: SourceRef) -> str:
    """
    Synthetic version name for a source build.

    >>> version_label("foundry-rs/foundry", resolve_ref(branch="feat/x"))
    'foundry-rs-branch-feat-x'
    """
    author = repository_id.split("/", 1)[0]
    if source.commit:
        return f"{author}-commit-{source.commit}"
    if source.pr is not None:
        return f"{author}-pr-{source.pr}"
    return f"{author}-branch-{source.ref.replace('/', '-')}"


# ------------------------------ subprocess ---------------------------------- #

async def _run_git(args: list[str], *, cwd: Optional[Path] = None) -> str:
    """
    Run a git command (no shell), raise BuildError on failure.
    Returns stdout decoded as UTF-8 (stripped).
    """
    logger.debug("exec: %s (cwd=%s)", " ".join(args), cwd or ".")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise BuildError(f"{args[0]} not found; install git or set FOUNDRYUP_GIT_BIN", command=args) from e
    except OSError as e:
        raise BuildError(f"failed to start {args[0]}: {e}", command=args) from e

    out_b, err_b = await proc.communicate()
    out = out_b.decode("utf-8", errors="replace").strip()
    err = err_b.decode("utf-8", errors="replace").strip()
    if err:
        logger.debug("stderr: %s", err)
    if proc.returncode != 0:
        raise BuildError(
            f"git {args[1] if len(args) > 1 else ''} failed ({proc.returncode}): {err}",
            command=args,
            returncode=proc.returncode,
        )
    return out


# ------------------------------ public API ---------------------------------- #

async def checkout_source(
    *,
    repository_id: str,
    repo_dir: Path,
    source: SourceRef,
    git_bin: str = "git",
) -> Path:
    """
    Clone ``repository_id`` into ``repo_dir`` on first use, then fetch and
    check out ``source``. Returns the checkout directory.

    Any git failure raises BuildError and stops the build.
    """
    if not repo_dir.exists():
        try:
            repo_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"failed to create {repo_dir.parent}: {e}") from e
        logger.info("cloning %s...", repository_id)
        await _run_git([git_bin, "clone", f"{GITHUB_URL}/{repository_id}", str(repo_dir)])

    logger.info("fetching %s...", source.ref)
    await _run_git(
        [git_bin, "fetch", "origin", f"{source.ref}:remotes/origin/{source.ref}"],
        cwd=repo_dir,
    )
    await _run_git([git_bin, "-c", "advice.detachedHead=false", "checkout", f"origin/{source.ref}"], cwd=repo_dir)

    if source.commit:
        await _run_git([git_bin, "-c", "advice.detachedHead=false", "checkout", source.commit], cwd=repo_dir)

    return repo_dir
