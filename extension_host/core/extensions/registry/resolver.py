"""Registry dependency-graph resolver"""

import asyncio
import logging
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import semver

from extension_host.core.extensions.exceptions import PackageNotFoundError
from extension_host.core.extensions.host import HostContext
from extension_host.core.extensions.models import (
    DependencyKind,
    ExtensionSpec,
    InstalledExtensionPackages,
    PackageDependency,
    PackageIdentity,
    PackageMetadata,
)
from extension_host.core.extensions.package_sets import InvalidPackageSet
from extension_host.core.extensions.registry.archive import install_archive
from extension_host.core.extensions.registry.manifest import (
    MANIFEST_FILE,
    find_entry_point,
    read_manifest,
    scan_library_files,
)
from extension_host.core.extensions.registry.solver import DependencySolver
from extension_host.core.extensions.registry.sources import RegistrySource
from extension_host.core.extensions.versioning import VersionRange, is_prerelease
from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled

logger = logging.getLogger(__name__)


class RegistryResolver:
    """
    Resolves configured extensions and their transitive dependencies
    against registry sources tried in priority order
    """

    def __init__(
        self,
        sources: Sequence[RegistrySource],
        host_context: HostContext,
        extensions_directory: Path
    ):
        self.sources = list(sources)
        self.host_context = host_context
        self.extensions_directory = Path(extensions_directory)

    async def resolve(
        self,
        extensions: Sequence[ExtensionSpec],
        additional_dependencies: Sequence[PackageDependency] = (),
        cancel_event: Optional[CancelSignal] = None
    ):
        """
        Resolve a package set

        Discovery failures are returned as an invalid set rather than raised.
        """
        try:
            return await self._resolve(extensions, additional_dependencies, cancel_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Registry resolution failed: {e}")
            return InvalidPackageSet(e)

    async def _resolve(self, extensions, additional_dependencies, cancel_event):
        walk = _GraphWalk(self.sources, self.host_context, cancel_event)

        kinds: Dict[str, DependencyKind] = {}
        roots: Dict[str, semver.Version] = {}

        for spec in extensions:
            identity, source = await walk.select_root(spec)
            logger.info(f"Selected {identity} from {source.name}")
            roots[identity.id.lower()] = identity.version
            kinds[identity.id.lower()] = DependencyKind.ROOT_PACKAGE
            walk.enqueue(identity)

        for dependency in additional_dependencies:
            key = dependency.id.lower()
            if key in kinds:
                continue
            identity, source = await walk.select_additional(dependency)
            logger.debug(f"Selected required dependency {identity} from {source.name}")
            roots[key] = identity.version
            kinds[key] = DependencyKind.ADDITIONAL_ROOT
            walk.enqueue(identity)

        await walk.expand()

        solver = DependencySolver(walk.pool, walk.names)
        selected = solver.solve(roots)

        return RegistryInstallablePackageSet(
            selected=selected,
            kinds=kinds,
            walk=walk,
            extensions_directory=self.extensions_directory,
            entry_point_tag=self.host_context.entry_point_tag,
        )


class _GraphWalk:
    """Breadth-first dependency discovery across sources"""

    def __init__(self, sources: List[RegistrySource], host_context: HostContext, cancel_event):
        self.sources = sources
        self.host_context = host_context
        self.cancel_event = cancel_event
        self.pool: Dict[str, Dict[semver.Version, List[PackageDependency]]] = {}
        self.names: Dict[str, str] = {}
        self.owners: Dict[PackageIdentity, RegistrySource] = {}
        self._versions: Dict[Tuple[int, str], List[semver.Version]] = {}
        self._queue: deque = deque()
        self._visited = set()

    async def _source_versions(self, source: RegistrySource, package_id: str) -> List[semver.Version]:
        key = (id(source), package_id.lower())
        if key not in self._versions:
            raise_if_cancelled(self.cancel_event)
            self._versions[key] = list(await source.get_versions(package_id))
        return self._versions[key]

    async def _select(self, package_id: str, version_range: Optional[VersionRange],
                      allow_prerelease: bool, lowest: bool):
        for source in self.sources:
            versions = await self._source_versions(source, package_id)
            allowed = [v for v in versions if allow_prerelease or not is_prerelease(v)]
            if not allowed:
                continue
            if version_range is not None:
                best = version_range.find_best_match(allowed)
            else:
                best = min(allowed) if lowest else max(allowed)
            if best is not None:
                self.names.setdefault(package_id.lower(), package_id)
                return PackageIdentity(package_id, best), source
        return None

    async def select_root(self, spec: ExtensionSpec):
        found = await self._select(spec.package, spec.version_range, spec.prerelease, lowest=False)
        if found is None:
            raise PackageNotFoundError(spec.package)
        return found

    async def select_additional(self, dependency: PackageDependency):
        version_range = dependency.version_range
        allow_prerelease = version_range is not None and version_range.has_prerelease_bounds
        found = await self._select(dependency.id, version_range, allow_prerelease, lowest=False)
        if found is None:
            raise PackageNotFoundError(dependency.id)
        return found

    def enqueue(self, identity: PackageIdentity) -> None:
        self._queue.append(identity)

    async def expand(self) -> None:
        while self._queue:
            identity = self._queue.popleft()
            if identity in self._visited:
                continue
            self._visited.add(identity)

            raise_if_cancelled(self.cancel_event)
            dependencies = await self._fetch_dependencies(identity)

            kept = []
            for dependency in dependencies:
                if self.host_context.dependency_supplied_by_host(dependency):
                    logger.debug(f"Dependency {dependency.id} of {identity} is supplied by the host")
                    continue
                kept.append(dependency)

            self.pool.setdefault(identity.id.lower(), {})[identity.version] = kept

            for dependency in kept:
                version_range = dependency.version_range
                allow_prerelease = version_range is not None and version_range.has_prerelease_bounds
                found = await self._select(dependency.id, version_range, allow_prerelease, lowest=True)
                if found is None:
                    raise PackageNotFoundError(
                        dependency.id,
                        f"Could not locate dependency '{dependency.id}' "
                        f"({dependency.version or 'any version'}) required by {identity}"
                    )
                self.enqueue(found[0])

    async def _fetch_dependencies(self, identity: PackageIdentity) -> List[PackageDependency]:
        # First source that knows the package wins; sources are not merged
        for source in self.sources:
            raise_if_cancelled(self.cancel_event)
            dependencies = await source.get_dependencies(identity)
            if dependencies is not None:
                self.owners[identity] = source
                return list(dependencies)
        raise PackageNotFoundError(identity.id, f"No source provides dependency data for {identity}")


class RegistryInstallablePackageSet:
    """A solved registry graph waiting to be downloaded and extracted"""

    is_valid = True
    error = None

    def __init__(
        self,
        selected: List[PackageIdentity],
        kinds: Dict[str, DependencyKind],
        walk: _GraphWalk,
        extensions_directory: Path,
        entry_point_tag: Optional[str]
    ):
        self.selected = selected
        self.kinds = kinds
        self.extensions_directory = extensions_directory
        self.entry_point_tag = entry_point_tag
        self._pool = walk.pool
        self._owners = walk.owners
        self.package_ids = [identity.id for identity in selected]

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        self.extensions_directory.mkdir(parents=True, exist_ok=True)
        selected_keys = {identity.id.lower() for identity in self.selected}
        packages = []

        for identity in self.selected:
            raise_if_cancelled(cancel_event)
            package_dir = self.extensions_directory / identity.folder_name

            if not (package_dir / MANIFEST_FILE).is_file():
                await self._download(identity, package_dir)
            else:
                logger.debug(f"Reusing installed package {identity} at {package_dir}")

            library_files = await asyncio.to_thread(scan_library_files, package_dir)
            manifest = await asyncio.to_thread(read_manifest, package_dir)

            dependencies = self._pool.get(identity.id.lower(), {}).get(identity.version, [])
            packages.append(PackageMetadata(
                id=identity.id,
                version=str(identity.version),
                install_folder=package_dir,
                entry_point=find_entry_point(manifest, library_files, self.entry_point_tag),
                library_files=library_files,
                dependency_kind=self.kinds.get(identity.id.lower(), DependencyKind.DEPENDENCY),
                dependency_ids=[d.id for d in dependencies if d.id.lower() in selected_keys],
            ))

        return InstalledExtensionPackages(packages)

    async def _download(self, identity: PackageIdentity, package_dir: Path) -> None:
        source = self._owners[identity]
        work_dir = Path(tempfile.mkdtemp(prefix="exthost_"))
        try:
            archive = await source.download(identity, work_dir)
            await asyncio.to_thread(install_archive, archive, package_dir)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
