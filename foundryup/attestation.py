# SPDX-License-Identifier: MIT
"""
foundryup.attestation

Fetches the build-provenance attestation published next to a release and
turns it into a ``{binary name: sha256}`` map, then compares installed
binaries against it.

Only digests are compared here. Signature and certificate checks on the
bundle are not performed.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .archivefetch import ArchiveTransport, compute_digest
from .errors import IntegrityError, NetworkError
from .targets import Capabilities, Target

__all__ = [
    "AttestationBundle",
    "AttestationCheck",
    "BinaryCheck",
    "AttestationVerifier",
    "parse_attestation",
]

logger = logging.getLogger("foundryup.attestation")

AttestationBundle = Dict[str, str]

NOT_FOUND_MARKER = "Not Found"


# ------------------------------ wire models --------------------------------- #

class Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payload: str
    payload_type: Optional[str] = Field(default=None, alias="payloadType")


class SigstoreBundle(BaseModel):
    """Sigstore bundle; older bundles carry ``payload`` at the top level."""

    model_config = ConfigDict(extra="ignore")

    dsse_envelope: Optional[Envelope] = Field(default=None, alias="dsseEnvelope")
    payload: Optional[str] = None

    def envelope_payload(self) -> str:
        if self.dsse_envelope is not None:
            return self.dsse_envelope.payload
        if self.payload is not None:
            return self.payload
        raise IntegrityError("missing payload in attestation")


class SubjectDigest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sha256: Optional[str] = None


class Subject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    digest: SubjectDigest = Field(default_factory=SubjectDigest)


class Statement(BaseModel):
    """in-toto statement; only the subject list matters here."""

    model_config = ConfigDict(extra="ignore")

    subject: List[Subject] = []


# ------------------------------ parsing ------------------------------------- #

def parse_attestation(text: str) -> AttestationBundle:
    """
    Parse a downloaded attestation artifact into ``{name: lowercase sha256}``.

    Raises
    ------
    IntegrityError when the JSON, the base64 payload, or the statement inside is
    malformed. Format drift is never tolerated.
    """
    try:
        bundle = SigstoreBundle.model_validate_json(text)
    except ValidationError as e:
        raise IntegrityError(f"malformed attestation bundle: {e}") from e

    payload_b64 = bundle.envelope_payload()
    try:
        raw = base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise IntegrityError(f"attestation payload is not valid base64: {e}") from e

    try:
        statement = Statement.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise IntegrityError(f"attestation payload is not valid JSON: {e}") from e
    except ValidationError as e:
        raise IntegrityError(f"malformed attestation statement: {e}") from e

    hashes: AttestationBundle = {}
    for subject in statement.subject:
        if subject.digest.sha256:
            hashes[subject.name] = subject.digest.sha256.lower()
    logger.debug("attestation: %d subjects (%s)", len(hashes), ", ".join(sorted(hashes)))
    return hashes


def _expected_digest(bundle: AttestationBundle, name: str, caps: Capabilities) -> Optional[str]:
    return bundle.get(name) or bundle.get(caps.binary_filename(name))


# ------------------------------ results ------------------------------------- #

@dataclass(frozen=True)
class BinaryCheck:
    name: str
    expected: Optional[str]
    actual: Optional[str]

    @property
    def ok(self) -> bool:
        return self.expected is not None and self.actual == self.expected

    @property
    def reason(self) -> str:
        if self.expected is None:
            return f"no expected hash for {self.name}"
        if self.actual is None:
            return f"binary {self.name} not found"
        if self.actual != self.expected:
            return f"{self.name} hash verification failed: expected {self.expected}, actual {self.actual}"
        return f"{self.name} verified ✓"


@dataclass(frozen=True)
class AttestationCheck:
    """Outcome of ``fetch_and_verify``: the bundle, and whether the cache already matches it."""

    bundle: AttestationBundle
    already_installed: bool


# ------------------------------ verifier ------------------------------------ #

class AttestationVerifier:
    def __init__(self, transport: ArchiveTransport, archive_prefix: str = "foundry") -> None:
        self.transport = transport
        self.archive_prefix = archive_prefix

    def attestation_url(self, release_url: str, version: str, target: Target) -> str:
        return f"{release_url}{target.stem(self.archive_prefix, version)}.attestation.txt"

    async def fetch_bundle(self, release_url: str, version: str, target: Target) -> Optional[AttestationBundle]:
        """
        Download and parse the attestation for a release.

        Returns None when the release has no attestation; that only means the
        install proceeds unverified.
        """
        url = self.attestation_url(release_url, version, target)
        try:
            body = await self.transport.fetch_to_string(url)
        except NetworkError as e:
            logger.debug("attestation: lookup failed for %s: %s", url, e)
            body = ""
        link = body.strip().splitlines()[0].strip() if body.strip() else ""
        if not link or NOT_FOUND_MARKER in link:
            logger.info("no attestation found for this release, skipping SHA verification")
            return None

        logger.info("found attestation for %s version, downloading attestation artifact, checking...", version)
        artifact_url = link if link.rstrip("/").endswith("/download") else f"{link.rstrip('/')}/download"
        artifact = await self.transport.fetch_to_string(artifact_url)
        return parse_attestation(artifact)

    def verify_binaries(
        self,
        bundle: AttestationBundle,
        binary_names: Sequence[str],
        version_dir: Path,
        caps: Capabilities,
    ) -> List[BinaryCheck]:
        results: List[BinaryCheck] = []
        for name in binary_names:
            expected = _expected_digest(bundle, name, caps)
            path = version_dir / caps.binary_filename(name)
            actual = compute_digest(path) if path.is_file() else None
            results.append(BinaryCheck(name=name, expected=expected, actual=actual))
        return results

    def ensure_verified(
        self,
        bundle: AttestationBundle,
        binary_names: Sequence[str],
        version_dir: Path,
        caps: Capabilities,
    ) -> None:
        """Raise IntegrityError naming every binary that is missing or mismatched."""
        logger.info("verifying downloaded binaries against the attestation file")
        failed: List[str] = []
        for check in self.verify_binaries(bundle, binary_names, version_dir, caps):
            if check.ok:
                logger.info(check.reason)
            else:
                logger.warning(check.reason)
                failed.append(check.name)
        if failed:
            raise IntegrityError(
                f"one or more binaries failed post-installation verification: {', '.join(failed)}",
                failed=failed,
            )

    async def fetch_and_verify(
        self,
        release_url: str,
        version: str,
        target: Target,
        binary_names: Sequence[str],
        version_dir: Path,
    ) -> Optional[AttestationCheck]:
        """
        Fetch the bundle and check whether ``version_dir`` already matches it.

        ``already_installed`` is True only if the directory exists and every
        expected binary is present with the attested digest.
        """
        bundle = await self.fetch_bundle(release_url, version, target)
        if bundle is None:
            return None
        caps = target.capabilities
        cached = False
        if version_dir.is_dir():
            checks = await asyncio.to_thread(self.verify_binaries, bundle, binary_names, version_dir, caps)
            cached = all(c.ok for c in checks)
        if not cached:
            logger.info("binaries not found or do not match expected hashes, downloading new binaries")
        return AttestationCheck(bundle=bundle, already_installed=cached)
