"""Decide whether a cached dependency graph can be reused"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from extension_host.core.extensions.cache import CachedPackage, DependencyCache
from extension_host.core.extensions.exceptions import InstallationError
from extension_host.core.extensions.models import (
    DependencyKind,
    ExtensionSpec,
    PackageDependency,
    PackageMetadata,
)
from extension_host.core.extensions.registry.manifest import (
    find_entry_point,
    read_manifest,
    scan_library_files,
)
from extension_host.core.extensions.versioning import (
    VersionRange,
    is_prerelease,
    try_parse_version,
)

logger = logging.getLogger(__name__)


class DependencyCacheValidator:
    """
    Validates a cached graph against the current configuration

    ``validate`` is a pure decision over in-memory data. ``verify_files_present``
    checks the cached graph against the extensions directory on disk.
    """

    def validate(
        self,
        configured: Sequence[ExtensionSpec],
        additional_dependencies: Sequence[PackageDependency],
        cache: DependencyCache
    ) -> bool:
        """
        True if every configured root is cached at an acceptable version with
        the kind it is now required as, and no cached root is left over

        Raises:
            ConfigurationError: If a configured version range cannot be parsed
        """
        remaining: Dict[str, CachedPackage] = {p.id.lower(): p for p in cache.root_packages()}
        consumed: Dict[str, CachedPackage] = {}
        configured_ids = {spec.package.lower() for spec in configured}
        is_valid = True

        def take(package_id: str) -> Optional[CachedPackage]:
            key = package_id.lower()
            if key in remaining:
                consumed[key] = remaining.pop(key)
            return consumed.get(key)

        def kind_matches(entry: CachedPackage, kind: DependencyKind) -> bool:
            if entry.type != kind:
                logger.debug(f"Cached {entry.id} is a {entry.type.value}, now required as {kind.value}")
                return False
            return True

        for spec in configured:
            version_range = (
                VersionRange.parse_config(spec.version, spec.package)
                if spec.version else None
            )
            entry = take(spec.package)
            if entry is None:
                logger.debug(f"No entry for {spec.package} in the dependency cache")
                is_valid = False
                continue

            if not kind_matches(entry, DependencyKind.ROOT_PACKAGE):
                is_valid = False
            elif not self._entry_acceptable(entry, version_range, allow_prerelease=spec.prerelease):
                is_valid = False
            else:
                logger.debug(f"Cached extension info for {spec.package} is valid")

        for dependency in additional_dependencies:
            version_range = (
                VersionRange.parse_config(dependency.version, dependency.id)
                if dependency.version else None
            )
            entry = take(dependency.id)
            if entry is None:
                logger.debug(f"No entry for required dependency {dependency.id} in the dependency cache")
                is_valid = False
                continue

            kind = (
                DependencyKind.ROOT_PACKAGE if dependency.id.lower() in configured_ids
                else DependencyKind.ADDITIONAL_ROOT
            )
            if not kind_matches(entry, kind):
                is_valid = False
            elif not self._entry_acceptable(entry, version_range, allow_prerelease=True):
                is_valid = False

        for extra in remaining.values():
            logger.debug(f"Dependency cache contains unrequested root package {extra.id}")
            is_valid = False

        return is_valid

    def _entry_acceptable(
        self,
        entry: CachedPackage,
        version_range: Optional[VersionRange],
        allow_prerelease: bool
    ) -> bool:
        cached_version = try_parse_version(entry.version)
        if cached_version is None:
            logger.debug(f"Bad version '{entry.version}' for {entry.id} in the dependency cache")
            return False

        if version_range is not None and not version_range.satisfies(cached_version):
            logger.debug(
                f"Configured version {version_range} of {entry.id} is not "
                f"compatible with cached version {entry.version}"
            )
            return False

        if not allow_prerelease and is_prerelease(cached_version):
            logger.debug(f"Cached prerelease of {entry.id} is no longer allowed")
            return False

        return True

    def verify_files_present(
        self,
        cache: DependencyCache,
        extensions_directory: Path,
        entry_point_tag: Optional[str] = None
    ) -> Optional[List[PackageMetadata]]:
        """
        Rebuild package metadata from disk

        Returns:
            The packages, or None as soon as any package folder, manifest or
            cached library file is missing.
        """
        packages: List[PackageMetadata] = []

        for entry in cache.packages:
            package_dir = Path(extensions_directory) / entry.path
            if not package_dir.is_dir():
                logger.debug(f"Package directory {package_dir} does not exist")
                return None

            library_files = scan_library_files(package_dir)
            present = set(library_files)
            for cached_file in entry.library_files:
                if cached_file not in present:
                    logger.debug(f"Cannot find library file {cached_file} for {entry.id} {entry.version}")
                    return None

            try:
                manifest = read_manifest(package_dir)
            except InstallationError as e:
                logger.debug(f"Cached package {entry.id} has no usable manifest: {e}")
                return None

            packages.append(PackageMetadata(
                id=entry.id,
                version=entry.version,
                install_folder=package_dir,
                entry_point=find_entry_point(manifest, library_files, entry_point_tag),
                library_files=library_files,
                dependency_kind=entry.type,
                dependency_ids=list(entry.dependencies.keys()),
            ))

        return packages
