from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Dict

import pytest
import requests

from extension_host.core.extensions.exceptions import DownloadError
from extension_host.core.extensions.models import PackageIdentity
from extension_host.core.extensions.registry.http_source import HttpRegistrySource
from extension_host.core.extensions.registry.sources import LocalFolderSource, create_source
from extension_host.core.extensions.versioning import parse_version


class FakeResponse:
    def __init__(self, url: str, status_code: int = 200, body: bytes = b""):
        self.url = url
        self.status_code = status_code
        self.content = body
        self.headers = {"Content-Length": str(len(body))}

    def json(self):
        return json.loads(self.content)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} for {self.url}")

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]


def _serve(source: HttpRegistrySource, routes: Dict[str, bytes]) -> list:
    requested = []

    def fake_get(url, **kwargs):
        requested.append(url)
        if url in routes:
            return FakeResponse(url, body=routes[url])
        return FakeResponse(url, status_code=404)

    source.session.get = fake_get
    return requested


def test_invalid_registry_url_is_rejected() -> None:
    with pytest.raises(DownloadError):
        HttpRegistrySource("ftp://example.com/packages")


def test_create_source_picks_source_type(tmp_path: Path) -> None:
    assert isinstance(create_source("https://registry.example.com"), HttpRegistrySource)
    assert isinstance(create_source(str(tmp_path)), LocalFolderSource)


@pytest.mark.asyncio
async def test_versions_accept_strings_and_objects() -> None:
    source = HttpRegistrySource("https://registry.example.com/")
    _serve(source, {
        "https://registry.example.com/acme.reports/index.json": json.dumps({
            "versions": ["1.0.0", {"version": "1.2.0", "sha256": "ABC"}, "bogus"],
        }).encode(),
    })

    versions = await source.get_versions("Acme.Reports")
    assert versions == [parse_version("1.0.0"), parse_version("1.2.0")]
    assert await source.get_versions("Unknown") == []


@pytest.mark.asyncio
async def test_dependencies_come_from_the_version_manifest() -> None:
    source = HttpRegistrySource("https://registry.example.com")
    _serve(source, {
        "https://registry.example.com/a/1.0.0/package.json": json.dumps({
            "id": "A", "version": "1.0.0", "dependencies": [{"id": "B", "version": "[1.0,)"}],
        }).encode(),
    })

    deps = await source.get_dependencies(PackageIdentity("A", "1.0.0"))
    assert [(d.id, d.version) for d in deps] == [("B", "[1.0,)")]
    assert await source.get_dependencies(PackageIdentity("A", "2.0.0")) is None


@pytest.mark.asyncio
async def test_download_verifies_sha256(tmp_path: Path) -> None:
    payload = b"zip-bytes"
    good = hashlib.sha256(payload).hexdigest()
    source = HttpRegistrySource("https://registry.example.com")
    _serve(source, {
        "https://registry.example.com/a/index.json": json.dumps({
            "versions": [{"version": "1.0.0", "sha256": good}, {"version": "2.0.0", "sha256": "0" * 64}],
        }).encode(),
        "https://registry.example.com/a/1.0.0/A.1.0.0.zip": payload,
        "https://registry.example.com/a/2.0.0/A.2.0.0.zip": payload,
    })
    await source.get_versions("A")

    archive = await source.download(PackageIdentity("A", "1.0.0"), tmp_path / "work")
    assert archive.read_bytes() == payload

    with pytest.raises(DownloadError):
        await source.download(PackageIdentity("A", "2.0.0"), tmp_path / "work")
    assert not list((tmp_path / "work").glob("*.tmp"))


@pytest.mark.asyncio
async def test_download_enforces_size_limit(tmp_path: Path) -> None:
    source = HttpRegistrySource("https://registry.example.com", max_size=4)
    _serve(source, {"https://registry.example.com/a/1.0.0/A.1.0.0.zip": b"0123456789"})

    with pytest.raises(DownloadError):
        await source.download(PackageIdentity("A", "1.0.0"), tmp_path / "work")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b'["1.0.0"]', b'{"versions": "1.0.0"}', b"not json"])
async def test_malformed_index_is_a_download_error(body: bytes) -> None:
    source = HttpRegistrySource("https://registry.example.com")
    _serve(source, {"https://registry.example.com/a/index.json": body})

    with pytest.raises(DownloadError):
        await source.get_versions("A")
