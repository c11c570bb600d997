"""Dependency cache document and persistence

The cache records the last successfully installed registry graph so the
next start can skip the registry entirely. It is always rewritten as a
whole, never patched.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from extension_host.core.config import get_config
from extension_host.core.extensions.exceptions import CacheError
from extension_host.core.extensions.models import (
    DependencyKind,
    InstalledExtensionPackages,
)

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


class CachedPackage(BaseModel):
    """One installed package as recorded in the cache"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    version: str
    type: DependencyKind = DependencyKind.DEPENDENCY
    path: str = Field(description="Install folder, relative to the extensions directory")
    library_files: List[str] = Field(default_factory=list, alias="libraryFiles")
    dependencies: Dict[str, str] = Field(default_factory=dict)


class DependencyCache(BaseModel):
    """extensions.deps.json"""

    format: int = CACHE_FORMAT_VERSION
    runtime: str
    packages: List[CachedPackage] = Field(default_factory=list)

    def root_packages(self) -> List[CachedPackage]:
        return [p for p in self.packages if p.type.is_root]


def cache_file_path(extensions_directory: Path) -> Path:
    return Path(extensions_directory) / get_config().cache_file_name


def build_cache(
    installed: InstalledExtensionPackages,
    extensions_directory: Path,
    runtime: str
) -> DependencyCache:
    """Cache document describing an installed collection"""
    versions = {p.id.lower(): p.version for p in installed.packages}
    entries = []

    for package in installed.packages:
        try:
            relative = package.install_folder.relative_to(extensions_directory).as_posix()
        except ValueError:
            relative = package.install_folder.as_posix()

        # Only dependencies that are part of the collection are recorded
        dependencies = {
            dep: versions[dep.lower()]
            for dep in package.dependency_ids
            if dep.lower() in versions
        }

        entries.append(CachedPackage(
            id=package.id,
            version=package.version,
            type=package.dependency_kind,
            path=relative,
            library_files=list(package.library_files),
            dependencies=dependencies,
        ))

    return DependencyCache(runtime=runtime, packages=entries)


def read_cache(path: Path) -> Optional[DependencyCache]:
    """
    Read the cache file

    Returns:
        The cache, or None if it is absent or unreadable. A corrupt cache is
        logged and treated as a cache miss.
    """
    if not path.exists():
        logger.debug(f"No dependency cache at {path}")
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        cache = DependencyCache.model_validate(data)
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable dependency cache {path}: {e}")
        return None

    if cache.format != CACHE_FORMAT_VERSION:
        logger.warning(f"Ignoring dependency cache {path} with unsupported format {cache.format}")
        return None

    return cache


def write_cache(path: Path, cache: DependencyCache) -> None:
    """
    Replace the cache file with the given document

    Raises:
        CacheError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = cache.model_dump(mode="json", by_alias=True)

    fd, temp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(temp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(temp_name)
        raise CacheError(f"Failed to write dependency cache {path}: {e}") from e

    logger.debug(f"Wrote dependency cache with {len(cache.packages)} package(s) to {path}")


def delete_cache(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
