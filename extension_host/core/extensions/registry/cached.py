"""Registry resolution with a dependency-cache fast path"""

import logging
from pathlib import Path
from typing import Optional, Sequence

from extension_host.core.config import get_config
from extension_host.core.extensions.cache import (
    DependencyCache,
    build_cache,
    cache_file_path,
    read_cache,
    write_cache,
)
from extension_host.core.extensions.cache_validator import DependencyCacheValidator
from extension_host.core.extensions.host import HostContext
from extension_host.core.extensions.models import (
    ExtensionSpec,
    InstalledExtensionPackages,
    PackageDependency,
)
from extension_host.core.extensions.package_sets import (
    AlreadyInstalledPackageSet,
    EmptyValidPackageSet,
    InvalidPackageSet,
)
from extension_host.core.extensions.registry.resolver import RegistryResolver
from extension_host.core.extensions.registry.sources import RegistrySource
from extension_host.core.utils.cancel import CancelSignal
from extension_host.core.utils.filelock import PathLock

logger = logging.getLogger(__name__)


def _cache_lock(path: Path, cancel_event: Optional[CancelSignal]) -> PathLock:
    interval = get_config().lock_poll_interval_ms / 1000.0
    return PathLock(path, poll_interval=interval, cancel_event=cancel_event)


class CachedPackagesResolver:
    """Reuses a previously installed graph when it still matches the configuration"""

    def __init__(
        self,
        host_context: HostContext,
        cache: DependencyCache,
        extensions_directory: Path,
        validator: Optional[DependencyCacheValidator] = None
    ):
        self.host_context = host_context
        self.cache = cache
        self.extensions_directory = Path(extensions_directory)
        self.validator = validator or DependencyCacheValidator()

    async def resolve(
        self,
        extensions: Sequence[ExtensionSpec],
        additional_dependencies: Sequence[PackageDependency] = (),
        cancel_event: Optional[CancelSignal] = None
    ):
        logger.debug("Dependency cache exists; verifying")

        if not self.validator.validate(extensions, additional_dependencies, self.cache):
            logger.debug("Cached root packages no longer match the configuration")
            return InvalidPackageSet(None)

        packages = self.validator.verify_files_present(
            self.cache,
            self.extensions_directory,
            self.host_context.entry_point_tag,
        )
        if packages is None:
            logger.debug("Not all cached package files are available")
            return InvalidPackageSet(None)

        logger.debug("Dependency cache is valid")
        return AlreadyInstalledPackageSet(packages)


class WriteCacheOnInstallPackageSet:
    """Installs a fresh registry set and records it as the new dependency cache"""

    def __init__(self, inner, cache_path: Path, extensions_directory: Path, runtime: str):
        self.inner = inner
        self.cache_path = cache_path
        self.extensions_directory = extensions_directory
        self.runtime = runtime

    @property
    def package_ids(self):
        return self.inner.package_ids

    @property
    def is_valid(self) -> bool:
        return self.inner.is_valid

    @property
    def error(self):
        return self.inner.error

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        async with _cache_lock(self.cache_path, cancel_event):
            installed = await self.inner.install(cancel_event)
            write_cache(
                self.cache_path,
                build_cache(installed, self.extensions_directory, self.runtime),
            )
        logger.info(f"Installed {len(installed)} registry package(s)")
        return installed


class FallbackRegistryResolver:
    """
    Tries the dependency cache first and falls back to the registry

    With ``no_cache`` the cache is never read, but a fresh install still
    rewrites it.
    """

    def __init__(
        self,
        sources: Sequence[RegistrySource],
        host_context: HostContext,
        extensions_directory: Path,
        no_cache: bool = False
    ):
        self.sources = list(sources)
        self.host_context = host_context
        self.extensions_directory = Path(extensions_directory)
        self.no_cache = no_cache
        self.cache_path = cache_file_path(self.extensions_directory)

    async def resolve_packages(self, context, cancel_event: Optional[CancelSignal] = None):
        return await self.resolve(context.extensions, context.additional_packages_required, cancel_event)

    async def resolve(
        self,
        extensions: Sequence[ExtensionSpec],
        additional_dependencies: Sequence[PackageDependency] = (),
        cancel_event: Optional[CancelSignal] = None
    ):
        if not extensions and not additional_dependencies:
            return EmptyValidPackageSet()

        if not self.no_cache:
            async with _cache_lock(self.cache_path, cancel_event):
                cache = read_cache(self.cache_path)

            if cache is not None:
                if cache.runtime != self.host_context.target_runtime:
                    logger.debug(f"Dependency cache targets {cache.runtime}; ignoring it")
                else:
                    cached = CachedPackagesResolver(
                        self.host_context, cache, self.extensions_directory
                    )
                    result = await cached.resolve(extensions, additional_dependencies, cancel_event)
                    if result.is_valid:
                        return result

        fresh = await RegistryResolver(
            self.sources, self.host_context, self.extensions_directory
        ).resolve(extensions, additional_dependencies, cancel_event)

        if not fresh.is_valid:
            return fresh

        return WriteCacheOnInstallPackageSet(
            fresh,
            self.cache_path,
            self.extensions_directory,
            self.host_context.target_runtime,
        )
