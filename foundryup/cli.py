# SPDX-License-Identifier: MIT
"""
foundryup.cli

Command-line entry point. Parses arguments, builds the run ``Context`` and a
``Request``, and dispatches to install / list / use / update. All real work
lives in the library modules.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional

from . import __version__
from .archivefetch import ArchiveTransport
from .config import PRIMARY_PROFILE, Context, Network, http_timeout, resolve, tool_bin
from .errors import FoundryupError
from .installer import InstallOrchestrator, Request
from .processes import check_bins_in_use
from .self_update import BackgroundUpdateCheck, SelfUpdater
from .targets import Target
from .versions import VersionStore, normalize_version

logger = logging.getLogger("foundryup")

_TRUTHY = ("1", "true", "yes", "on")


class _SayFormatter(logging.Formatter):
    """``foundryup: msg`` for INFO, ``foundryup: <level>: msg`` above it."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        if record.levelno >= logging.ERROR:
            return f"foundryup: error: {msg}"
        if record.levelno >= logging.WARNING:
            return f"foundryup: warning: {msg}"
        if record.levelno <= logging.DEBUG:
            return f"foundryup: [{record.name}] {msg}"
        return f"foundryup: {msg}"


class _StderrHandler(logging.StreamHandler):
    """Always writes to the current ``sys.stderr``, even after it is swapped out."""

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr

    @stream.setter
    def stream(self, value) -> None:
        pass


def configure_logging(env: Optional[Mapping[str, str]] = None) -> None:
    env = os.environ if env is None else env
    debug = (env.get("FOUNDRYUP_DEBUG") or "").strip().lower() in _TRUTHY
    if not any(isinstance(h, _StderrHandler) for h in logger.handlers):
        handler = _StderrHandler()
        handler.setFormatter(_SayFormatter())
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="foundryup",
        description="Install, update, and switch between Foundry toolchain versions.",
    )
    p.add_argument("-V", "--version", action="version", version=f"foundryup {__version__}")

    src = p.add_argument_group("version and source")
    src.add_argument("-i", "--install", dest="install", metavar="VERSION", help="Install a specific version")
    refs = src.add_mutually_exclusive_group()
    refs.add_argument("-b", "--branch", help="Build and install a specific branch")
    refs.add_argument("-P", "--pr", type=int, help="Build and install a specific pull request")
    src.add_argument("-C", "--commit", help="Build and install a specific commit")
    src.add_argument("-r", "--repo", help="Build and install from a remote GitHub repo (owner/repo)")
    src.add_argument("-p", "--path", help="Build and install a local repository")

    build = p.add_argument_group("build and verification")
    build.add_argument("-j", "--jobs", type=int, help="Number of CPU cores to use for building")
    build.add_argument("-f", "--force", action="store_true", help="Skip SHA verification of downloaded binaries")
    build.add_argument("-n", "--network", choices=[n.value for n in Network], help="Install binaries for a network")
    build.add_argument("--arch", help="Install a specific architecture (amd64, arm64)")
    build.add_argument("--platform", help="Install a specific platform (linux, alpine, darwin, win32)")

    actions = p.add_argument_group("actions")
    actions.add_argument("-U", "--update", action="store_true", help="Update foundryup to the latest version")
    actions.add_argument("-l", "--list", action="store_true", help="List installed versions")
    actions.add_argument("-u", "--use", metavar="VERSION", help="Use a specific installed version")
    return p


def request_from_args(args: argparse.Namespace) -> Request:
    return Request(
        network=Network(args.network) if args.network else None,
        version=args.install,
        branch=args.branch,
        pr=args.pr,
        commit=args.commit,
        repo=args.repo,
        path=Path(args.path).expanduser() if args.path else None,
        jobs=args.jobs,
        force=args.force,
        platform=args.platform,
        arch=args.arch,
    )


def _use(store: VersionStore, version: str, repository_id: Optional[str]) -> None:
    store.ctx.layout.ensure_directories()
    store.migrate_legacy_layout()
    store.activate(normalize_version(version), repository_id)


async def _run(args: argparse.Namespace, env: Mapping[str, str]) -> int:
    request = request_from_args(args)
    layout, profile = resolve(network=request.network, env=env)
    target = Target.detect(request.platform, request.arch)
    ctx = Context(layout=layout, profile=profile, target=target, network=request.network)

    async with ArchiveTransport(timeout=http_timeout(env)) as transport:
        updater = SelfUpdater(ctx, transport)

        if args.update:
            check_bins_in_use(PRIMARY_PROFILE.binary_names)
            await updater.run()
            return 0

        background = BackgroundUpdateCheck(updater)
        background.start()
        try:
            if args.list:
                await asyncio.to_thread(VersionStore(ctx).print_installed)
            elif args.use:
                check_bins_in_use(PRIMARY_PROFILE.binary_names)
                await asyncio.to_thread(_use, VersionStore(ctx), args.use, request.repo)
            else:
                check_bins_in_use(PRIMARY_PROFILE.binary_names)
                orchestrator = InstallOrchestrator(
                    ctx,
                    transport,
                    git_bin=tool_bin("git", env),
                    cargo_bin=tool_bin("cargo", env),
                )
                await orchestrator.run(request)
        except BaseException:
            background.cancel()
            raise
        await background.join()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(_run(args, os.environ))
    except KeyboardInterrupt:
        return 130
    except FoundryupError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
