"""Package registry sources"""

import asyncio
import logging
import threading
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

import semver

from extension_host.core.extensions.exceptions import InstallationError
from extension_host.core.extensions.models import PackageDependency, PackageIdentity
from extension_host.core.extensions.registry.manifest import (
    MANIFEST_FILE,
    PackageManifest,
    parse_manifest,
)
from extension_host.core.extensions.versioning import parse_version

logger = logging.getLogger(__name__)


@runtime_checkable
class RegistrySource(Protocol):
    """A place packages can be discovered and downloaded from"""

    name: str

    async def get_versions(self, package_id: str) -> List[semver.Version]:
        """All published versions of a package; empty if unknown"""
        ...

    async def get_dependencies(self, identity: PackageIdentity) -> Optional[List[PackageDependency]]:
        """Direct dependencies of a package version; None if this source lacks it"""
        ...

    async def download(self, identity: PackageIdentity, work_dir: Path) -> Path:
        """Fetch the package archive and return its local path"""
        ...


class LocalFolderSource:
    """
    A folder of package archives

    Every ``*.zip`` in the folder is a package; its ``package.json`` supplies
    the id, version and dependencies. The folder is indexed on first use.
    """

    def __init__(self, folder: Path, name: Optional[str] = None):
        self.folder = Path(folder)
        self.name = name or str(self.folder)
        self._index: Optional[Dict[str, Dict[semver.Version, Tuple[Path, PackageManifest]]]] = None
        self._index_lock = threading.Lock()

    def _build_index(self) -> Dict[str, Dict[semver.Version, Tuple[Path, PackageManifest]]]:
        with self._index_lock:
            if self._index is not None:
                return self._index

            index: Dict[str, Dict[semver.Version, Tuple[Path, PackageManifest]]] = {}
            if not self.folder.is_dir():
                logger.warning(f"Package folder {self.folder} does not exist")
            else:
                for archive in sorted(self.folder.glob("*.zip")):
                    try:
                        with zipfile.ZipFile(archive, "r") as zf:
                            manifest = parse_manifest(zf.read(MANIFEST_FILE), str(archive))
                    except (zipfile.BadZipFile, KeyError, OSError, InstallationError) as e:
                        logger.warning(f"Skipping unreadable package archive {archive}: {e}")
                        continue
                    versions = index.setdefault(manifest.id.lower(), {})
                    versions[parse_version(manifest.version)] = (archive, manifest)

            logger.debug(f"Indexed {len(index)} package(s) in {self.folder}")
            self._index = index
            return index

    async def _entries(self, package_id: str) -> Dict[semver.Version, Tuple[Path, PackageManifest]]:
        index = self._index if self._index is not None else await asyncio.to_thread(self._build_index)
        return index.get(package_id.lower(), {})

    async def get_versions(self, package_id: str) -> List[semver.Version]:
        return sorted((await self._entries(package_id)).keys())

    async def get_dependencies(self, identity: PackageIdentity) -> Optional[List[PackageDependency]]:
        entry = (await self._entries(identity.id)).get(identity.version)
        if entry is None:
            return None
        return list(entry[1].dependencies)

    async def download(self, identity: PackageIdentity, work_dir: Path) -> Path:
        entry = (await self._entries(identity.id)).get(identity.version)
        if entry is None:
            raise InstallationError(f"Package {identity} is not available from {self.name}")
        return entry[0]

    def __repr__(self) -> str:
        return f"LocalFolderSource({self.folder})"


def create_source(location: str) -> RegistrySource:
    """Build a source from a folder path or an http(s) URL"""
    if location.startswith(("http://", "https://")):
        from extension_host.core.extensions.registry.http_source import HttpRegistrySource
        return HttpRegistrySource(location)
    return LocalFolderSource(Path(location).expanduser().resolve())
