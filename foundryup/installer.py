# SPDX-License-Identifier: MIT
"""
foundryup.installer

Install orchestration. A ``Request`` is classified exactly once into one of
four modes, and each mode has a single pipeline:

    LocalBuild         cargo build in a local checkout, link into bin/
    Prebuilt           attestation → download → extract → verify → activate
    AlternatePrebuilt  same as Prebuilt, against the selected alternate network
    SourceBuild        clone/fetch/checkout → cargo build → move → activate
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .archivefetch import ArchiveTransport
from .attestation import AttestationBundle, AttestationVerifier
from .cargo_builder import link_binaries, move_binaries, run_cargo_build
from .config import GITHUB_URL, PRIMARY_PROFILE, Context, Network, NetworkProfile
from .errors import FoundryupError
from .gitfetch import SourceRef, checkout_source, resolve_ref, version_label
from .targets import ArchiveFormat
from .versions import VersionStore, normalize_version

__all__ = [
    "Request",
    "LocalBuild",
    "Prebuilt",
    "AlternatePrebuilt",
    "SourceBuild",
    "InstallMode",
    "InstallResult",
    "classify",
    "InstallOrchestrator",
]

logger = logging.getLogger("foundryup.installer")


@dataclass(frozen=True)
class Request:
    """A parsed, validated install request as produced by the CLI."""

    network: Optional[Network] = None
    version: Optional[str] = None
    branch: Optional[str] = None
    pr: Optional[int] = None
    commit: Optional[str] = None
    repo: Optional[str] = None
    path: Optional[Path] = None
    jobs: Optional[int] = None
    force: bool = False
    platform: Optional[str] = None
    arch: Optional[str] = None

    @property
    def wants_build(self) -> bool:
        return bool(self.branch) or self.pr is not None or bool(self.commit)


@dataclass(frozen=True)
class LocalBuild:
    path: Path


@dataclass(frozen=True)
class Prebuilt:
    profile: NetworkProfile


@dataclass(frozen=True)
class AlternatePrebuilt:
    profile: NetworkProfile


@dataclass(frozen=True)
class SourceBuild:
    repository_id: str
    source: SourceRef


InstallMode = Union[LocalBuild, Prebuilt, AlternatePrebuilt, SourceBuild]


@dataclass(frozen=True)
class InstallResult:
    mode: InstallMode
    tag: Optional[str]
    cached: bool = False
    activated: List[Path] = field(default_factory=list)


def classify(request: Request, profile: NetworkProfile) -> InstallMode:
    """
    Decide how ``request`` is satisfied; first match wins.

    The effective repository (``--repo``, else the selected network's) is only
    ever compared with the *selected* network's repository. An explicit
    repository that differs from it is always built from source.
    """
    if request.path is not None:
        return LocalBuild(path=Path(request.path))

    repo = request.repo or profile.repository_id
    if not request.wants_build and repo == profile.repository_id:
        if profile == PRIMARY_PROFILE:
            return Prebuilt(profile=profile)
        return AlternatePrebuilt(profile=profile)

    source = resolve_ref(branch=request.branch, pr=request.pr, commit=request.commit)
    return SourceBuild(repository_id=repo, source=source)


class InstallOrchestrator:
    def __init__(
        self,
        ctx: Context,
        transport: ArchiveTransport,
        *,
        store: Optional[VersionStore] = None,
        git_bin: str = "git",
        cargo_bin: str = "cargo",
    ) -> None:
        self.ctx = ctx
        self.transport = transport
        self.store = store or VersionStore(ctx)
        self.git_bin = git_bin
        self.cargo_bin = cargo_bin

    # ---- Public API ----------------------------------------------------------

    async def run(self, request: Request) -> InstallResult:
        mode = classify(request, self.ctx.profile)
        logger.debug("install: mode=%s", mode)
        self.ctx.layout.ensure_directories()
        self.store.migrate_legacy_layout()

        if isinstance(mode, LocalBuild):
            return await self._install_local(request, mode)
        if isinstance(mode, SourceBuild):
            return await self._install_from_source(request, mode)
        return await self._install_prebuilt(request, mode)

    # ---- prebuilt --------------------------------------------------------------

    def release_url(self, profile: NetworkProfile, tag: str) -> str:
        return f"{GITHUB_URL}/{profile.repository_id}/releases/download/{tag}/"

    async def _install_prebuilt(self, request: Request, mode: Union[Prebuilt, AlternatePrebuilt]) -> InstallResult:
        profile = mode.profile
        version = normalize_version(request.version or profile.default_version)
        tag = version
        repo = profile.repository_id
        caps = self.ctx.capabilities
        release_url = self.release_url(profile, tag)
        vdir = self.store.version_dir(tag, repo)
        verifier = AttestationVerifier(self.transport, profile.archive_prefix)

        logger.info("installing %s (version %s, tag %s)", profile.display_name, version, tag)

        bundle: Optional[AttestationBundle] = None
        if request.force:
            logger.info("skipped SHA verification due to --force flag")
        elif profile.has_attestation:
            check = await verifier.fetch_and_verify(release_url, version, self.ctx.target, profile.binary_names, vdir)
            if check is not None and check.already_installed:
                logger.info("version %s already installed and verified, activating...", tag)
                self.store.mark_verified(tag, repo)
                activated = await asyncio.to_thread(self.store.activate, tag, repo)
                logger.info("done!")
                return InstallResult(mode=mode, tag=tag, cached=True, activated=activated)
            if check is not None:
                bundle = check.bundle

        await self._download_and_extract(release_url, profile, version, tag)

        if bundle is not None:
            # On failure the files stay behind the unverified marker; only a
            # later run that re-verifies them can clear it.
            await asyncio.to_thread(verifier.ensure_verified, bundle, profile.binary_names, vdir, caps)
        self.store.mark_verified(tag, repo)

        await self._download_manpages(release_url, profile.manpage_version or version)

        activated = await asyncio.to_thread(self.store.activate, tag, repo)
        logger.info("done!")
        return InstallResult(mode=mode, tag=tag, activated=activated)

    async def _download_and_extract(self, release_url: str, profile: NetworkProfile, version: str, tag: str) -> Path:
        target = self.ctx.target
        caps = target.capabilities
        archive_name = target.archive_name(profile.archive_prefix, version)
        logger.info("downloading %s", archive_name)

        with tempfile.TemporaryDirectory(prefix="foundryup-") as tmp:
            archive_path = Path(tmp) / archive_name
            await self.transport.fetch_to_file(f"{release_url}{archive_name}", archive_path)
            # Anything already in the directory failed (or skipped) verification.
            vdir = self.store.reset_version_dir(tag, profile.repository_id)
            self.store.mark_unverified(tag, profile.repository_id)
            await asyncio.to_thread(
                self.transport.extract,
                archive_path,
                vdir,
                caps.archive_format,
                posix_permissions=caps.posix_permissions,
            )
        return vdir

    async def _download_manpages(self, release_url: str, version: str) -> None:
        url = f"{release_url}foundry_man_{version}.tar.gz"
        logger.info("downloading manpages")
        try:
            with tempfile.TemporaryDirectory(prefix="foundryup-man-") as tmp:
                archive_path = Path(tmp) / "foundry_man.tar.gz"
                await self.transport.fetch_to_file(url, archive_path)
                await asyncio.to_thread(
                    self.transport.extract,
                    archive_path,
                    self.ctx.layout.man_dir,
                    ArchiveFormat.TAR_GZ,
                    posix_permissions=False,
                )
        except (FoundryupError, OSError) as e:
            logger.warning("skipping manpage download: %s", e)

    # ---- source / local --------------------------------------------------------

    async def _install_from_source(self, request: Request, mode: SourceBuild) -> InstallResult:
        repo = mode.repository_id
        checkout = await checkout_source(
            repository_id=repo,
            repo_dir=self.ctx.layout.repo_dir(repo),
            source=mode.source,
            git_bin=self.git_bin,
        )
        label = version_label(repo, mode.source)
        logger.info("installing version %s", label)

        built = await run_cargo_build(checkout, jobs=request.jobs, cargo_bin=self.cargo_bin)
        vdir = self.store.reset_version_dir(label, repo)
        self.store.mark_unverified(label, repo)
        move_binaries(built, vdir, self.ctx.profile.binary_names, self.ctx.capabilities)
        self.store.mark_verified(label, repo)

        activated = await asyncio.to_thread(self.store.activate, label, repo)
        logger.info("done")
        return InstallResult(mode=mode, tag=label, activated=activated)

    async def _install_local(self, request: Request, mode: LocalBuild) -> InstallResult:
        if request.repo or request.branch or request.version:
            logger.warning("--branch, --install, --use, and --repo arguments are ignored during local install")
        logger.info("installing from %s", mode.path)

        built = await run_cargo_build(mode.path, jobs=request.jobs, cargo_bin=self.cargo_bin)
        linked = link_binaries(built, self.ctx.layout.bin_dir, self.ctx.profile.binary_names, self.ctx.capabilities)
        logger.info("done")
        return InstallResult(mode=mode, tag=None, activated=linked)
