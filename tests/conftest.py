# tests/conftest.py
# Shared fixtures: an isolated foundry root, in-memory release archives and a
# fake GitHub release server built on httpx.MockTransport.
from __future__ import annotations

import base64
import hashlib
import io
import json
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from foundryup.archivefetch import ArchiveTransport
from foundryup.config import Context, Network, resolve
from foundryup.targets import Arch, Platform, Target

LINUX_AMD64 = Target(platform=Platform.LINUX, arch=Arch.AMD64)
WIN32_AMD64 = Target(platform=Platform.WIN32, arch=Arch.AMD64)


# ---- pytest markers ----------------------------------------------------------
def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "posix: test executes shell-script binaries")


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="needs /bin/sh")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip)


# ---- helpers -----------------------------------------------------------------
def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def script_binary(name: str, version: str) -> bytes:
    """A tiny executable that answers ``-V`` like the real tools do."""
    return f'#!/bin/sh\necho "{name} Version: {version}"\n'.encode()


def make_tar_gz(files: Dict[str, bytes], mode: int = 0o644) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_zip(files: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def attestation_document(digests: Dict[str, str]) -> str:
    statement = {
        "_type": "https://in-toto.io/Statement/v1",
        "subject": [{"name": n, "digest": {"sha256": d}} for n, d in digests.items()],
        "predicateType": "https://slsa.dev/provenance/v1",
    }
    payload = base64.b64encode(json.dumps(statement).encode()).decode()
    return json.dumps(
        {
            "mediaType": "application/vnd.dev.sigstore.bundle.v0.3+json",
            "dsseEnvelope": {
                "payload": payload,
                "payloadType": "application/vnd.in-toto+json",
                "signatures": [],
            },
        }
    )


class FakeGitHub:
    """
    Serves registered URLs and 404s everything else; records every request.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, httpx.Response] = {}
        self.requests: List[str] = []

    def add(self, url: str, content: bytes | str, *, status: int = 200, headers: Optional[dict] = None) -> None:
        body = content.encode() if isinstance(content, str) else content
        self.routes[url] = httpx.Response(status, content=body, headers=headers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        resp = self.routes.get(url)
        if resp is None:
            return httpx.Response(404, text="Not Found")
        return httpx.Response(resp.status_code, content=resp.content, headers=resp.headers)

    def transport(self) -> ArchiveTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler), follow_redirects=True)
        return ArchiveTransport(client=client, quiet=True)

    def count(self, suffix: str) -> int:
        return sum(1 for u in self.requests if u.endswith(suffix))

    def publish_foundry(
        self,
        tag: str,
        binaries: Dict[str, bytes],
        *,
        repo: str = "foundry-rs/foundry",
        target: Target = LINUX_AMD64,
        attested: Optional[Dict[str, bytes]] = None,
        with_attestation: bool = True,
    ) -> str:
        """Register a release archive (and optionally its attestation); returns the release URL."""
        release = f"https://github.com/{repo}/releases/download/{tag}/"
        stem = target.stem("foundry", tag)
        if target.platform is Platform.WIN32:
            archive = make_zip({f"{n}.exe": d for n, d in binaries.items()})
        else:
            archive = make_tar_gz(binaries)
        self.add(f"{release}{target.archive_name('foundry', tag)}", archive)
        if with_attestation:
            link = f"https://github.com/{repo}/attestations/12345"
            self.add(f"{release}{stem}.attestation.txt", link + "\n")
            digests = {n: sha256_hex(d) for n, d in (attested or binaries).items()}
            self.add(f"{link}/download", attestation_document(digests))
        return release


# ---- fixtures ----------------------------------------------------------------
@pytest.fixture
def mock_transport_factory() -> (
    Callable[[Callable[[httpx.Request], httpx.Response]], ArchiveTransport]
):
    """
    Factory returning an ArchiveTransport whose client uses an httpx.MockTransport.

    Usage:
        def handler(request: httpx.Request) -> httpx.Response: ...
        transport = mock_transport_factory(handler)
    """

    def _factory(handler: Callable[[httpx.Request], httpx.Response]) -> ArchiveTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
        return ArchiveTransport(client=client, quiet=True)

    return _factory


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def make_ctx(tmp_path: Path) -> Callable[..., Context]:
    def _make(network: Optional[Network] = None, target: Target = LINUX_AMD64, root: Optional[Path] = None) -> Context:
        layout, profile = resolve(root or (tmp_path / ".foundry"), network, env={})
        return Context(layout=layout, profile=profile, target=target, network=network)

    return _make


@pytest.fixture
def ctx(make_ctx: Callable[..., Context]) -> Context:
    return make_ctx()


@pytest.fixture
def clean_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """A PATH that contains nothing foundry-related."""
    empty = tmp_path / "empty-path"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    return empty
