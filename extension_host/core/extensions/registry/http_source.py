"""JSON-over-HTTP package registry source

Layout served by the registry:

    {base}/{id}/index.json                  {"versions": ["1.0.0", {"version": "1.1.0", "sha256": "..."}]}
    {base}/{id}/{version}/package.json      package manifest
    {base}/{id}/{version}/{id}.{version}.zip
"""

import asyncio
import hashlib
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse

import requests
import semver
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extension_host.core.config import get_config
from extension_host.core.extensions.exceptions import DownloadError
from extension_host.core.extensions.models import PackageDependency, PackageIdentity
from extension_host.core.extensions.registry.manifest import parse_manifest
from extension_host.core.extensions.versioning import try_parse_version

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192  # 8KB chunks
USER_AGENT = "extension-host/0.1"


class HttpRegistrySource:
    """Registry source backed by a static JSON registry over HTTP"""

    def __init__(
        self,
        base_url: str,
        name: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[int] = None,
        max_size: Optional[int] = None
    ):
        config = get_config()
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DownloadError(f"Invalid registry URL: {base_url}")

        self.base_url = base_url.rstrip("/")
        self.name = name or self.base_url
        self.timeout = timeout if timeout is not None else config.http_timeout
        self.max_size = max_size if max_size is not None else config.max_download_size
        self._hashes: Dict[PackageIdentity, str] = {}

        # Configure session with retry strategy
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries if max_retries is not None else config.http_max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url] + [quote(p, safe="") for p in parts])

    def _get(self, url: str) -> Optional[requests.Response]:
        try:
            response = self.session.get(url, timeout=self.timeout, headers={"User-Agent": USER_AGENT})
        except requests.RequestException as e:
            raise DownloadError(f"Registry request failed: {url}: {e}") from e
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise DownloadError(f"Registry request failed: {url}: {e}") from e
        return response

    def _fetch_versions(self, package_id: str) -> List[semver.Version]:
        response = self._get(self._url(package_id.lower(), "index.json"))
        if response is None:
            return []
        try:
            body = response.json()
        except ValueError as e:
            raise DownloadError(f"Invalid registry index for {package_id}: {e}") from e

        entries = body.get("versions", []) if isinstance(body, dict) else None
        if not isinstance(entries, list):
            raise DownloadError(f"Invalid registry index for {package_id}: expected an object with a versions list")

        versions = []
        for entry in entries:
            text = entry.get("version") if isinstance(entry, dict) else entry
            version = try_parse_version(text)
            if version is None:
                logger.debug(f"Ignoring unparseable version {text!r} of {package_id} from {self.name}")
                continue
            if isinstance(entry, dict) and entry.get("sha256"):
                self._hashes[PackageIdentity(package_id, version)] = entry["sha256"].lower()
            versions.append(version)
        return sorted(versions)

    def _fetch_dependencies(self, identity: PackageIdentity) -> Optional[List[PackageDependency]]:
        response = self._get(self._url(identity.id.lower(), str(identity.version), "package.json"))
        if response is None:
            return None
        return list(parse_manifest(response.content, response.url).dependencies)

    def _download(self, identity: PackageIdentity, work_dir: Path) -> Path:
        url = self._url(identity.id.lower(), str(identity.version), f"{identity.id}.{identity.version}.zip")
        logger.info(f"Downloading {identity} from {url}")

        work_dir.mkdir(parents=True, exist_ok=True)
        target_path = work_dir / f"{identity.folder_name}.zip"
        temp_path = target_path.with_suffix(".zip.tmp")

        try:
            response = self.session.get(
                url,
                stream=True,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT}
            )
            response.raise_for_status()

            content_length = response.headers.get("Content-Length")
            if content_length and int(content_length) > self.max_size:
                raise DownloadError(
                    f"Package too large: {int(content_length) / 1024 / 1024:.2f}MB "
                    f"(max: {self.max_size / 1024 / 1024}MB)"
                )

            downloaded_bytes = 0
            digest = hashlib.sha256()
            start_time = time.time()

            with open(temp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    digest.update(chunk)
                    downloaded_bytes += len(chunk)

                    # Enforce size limit even without Content-Length
                    if downloaded_bytes > self.max_size:
                        raise DownloadError(
                            f"Download exceeded size limit: {downloaded_bytes / 1024 / 1024:.2f}MB"
                        )

            elapsed_time = time.time() - start_time
            logger.debug(f"Downloaded {downloaded_bytes / 1024:.2f}KB in {elapsed_time:.2f}s")

            expected = self._hashes.get(identity)
            if expected and digest.hexdigest() != expected:
                raise DownloadError(
                    f"SHA256 verification failed for {identity}: "
                    f"expected {expected}, got {digest.hexdigest()}"
                )

            temp_path.replace(target_path)
            return target_path

        except requests.RequestException as e:
            raise DownloadError(f"Download failed: {e}") from e

        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up temporary file {temp_path}: {e}")

    async def get_versions(self, package_id: str) -> List[semver.Version]:
        return await asyncio.to_thread(self._fetch_versions, package_id)

    async def get_dependencies(self, identity: PackageIdentity) -> Optional[List[PackageDependency]]:
        return await asyncio.to_thread(self._fetch_dependencies, identity)

    async def download(self, identity: PackageIdentity, work_dir: Path) -> Path:
        return await asyncio.to_thread(self._download, identity, work_dir)

    def close(self):
        """Close the session"""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
