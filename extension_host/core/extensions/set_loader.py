"""Top-level entry into the extension pipeline"""

import logging
from typing import Optional, Sequence, Type, TypeVar

from extension_host.core.extensions.composite import (
    CompositeInstallablePackageSet,
    CompositeResolver,
    ExtensionResolveContext,
)
from extension_host.core.extensions.entry_point import BaseExtensionEntryPoint, Collaborators
from extension_host.core.extensions.exceptions import ExtensionError
from extension_host.core.extensions.host import HostContext, HostEnvironment
from extension_host.core.extensions.loader import LoadedExtensions, load_extensions
from extension_host.core.extensions.local.build import BuildEnvironment, BuildTool
from extension_host.core.extensions.local.resolver import LocalExtensionResolver
from extension_host.core.extensions.models import (
    ExtensionsConfiguration,
    ExtensionSpec,
    InstalledExtensionPackages,
    LocalExtensionSpec,
)
from extension_host.core.extensions.registry.cached import FallbackRegistryResolver
from extension_host.core.extensions.registry.sources import RegistrySource
from extension_host.core.utils.cancel import CancelSignal

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExtensionSetLoader:
    """
    Resolves, installs and loads the extensions a host is configured with

    Usage:
        loader = ExtensionSetLoader(HostEnvironment("/srv/app"), entry_point_tag="my-host-extension")
        config = ExtensionsConfiguration.from_file(Path("/srv/app/extensions.yaml"))
        loaded = await loader.load(config, [LocalFolderSource(Path("/srv/packages"))])
        with loaded:
            for extension in loaded.entry_points:
                ...
    """

    def __init__(
        self,
        environment: HostEnvironment,
        host_context: Optional[HostContext] = None,
        entry_point_tag: Optional[str] = None,
        build_environment: Optional[BuildEnvironment] = None,
        build_tool: Optional[BuildTool] = None
    ):
        self.environment = environment
        self.host_context = host_context or HostContext.from_environment(entry_point_tag=entry_point_tag)
        self.build_environment = build_environment or BuildEnvironment()
        self.build_tool = build_tool

    def create_resolver(self, sources: Sequence[RegistrySource], no_cache: bool = False) -> CompositeResolver:
        extensions_directory = self.environment.extensions_directory
        return CompositeResolver(
            [
                LocalExtensionResolver(
                    self.environment,
                    self.host_context,
                    build_environment=self.build_environment,
                    build_tool=self.build_tool,
                ),
                FallbackRegistryResolver(
                    sources,
                    self.host_context,
                    extensions_directory,
                    no_cache=no_cache,
                ),
            ],
            extensions_directory,
        )

    async def resolve_extensions(
        self,
        sources: Sequence[RegistrySource],
        extensions: Sequence[ExtensionSpec],
        local_extensions: Sequence[LocalExtensionSpec] = (),
        no_cache: bool = False,
        cancel_event: Optional[CancelSignal] = None
    ) -> CompositeInstallablePackageSet:
        context = ExtensionResolveContext(extensions, local_extensions)
        return await self.create_resolver(sources, no_cache).resolve_packages(context, cancel_event)

    async def install(
        self,
        configuration: ExtensionsConfiguration,
        sources: Sequence[RegistrySource],
        no_cache: bool = False,
        cancel_event: Optional[CancelSignal] = None
    ) -> InstalledExtensionPackages:
        """
        Resolve and install

        Raises:
            ExtensionError: If resolution produced an invalid set
        """
        package_set = await self.resolve_extensions(
            sources,
            configuration.extensions,
            configuration.local_extensions,
            no_cache=no_cache,
            cancel_event=cancel_event,
        )
        if not package_set.is_valid:
            error = package_set.error
            logger.error(f"Extension resolution failed: {error}")
            if isinstance(error, ExtensionError):
                raise error
            raise ExtensionError(f"Extension resolution failed: {error}")

        return await package_set.install(cancel_event)

    async def load(
        self,
        configuration: ExtensionsConfiguration,
        sources: Sequence[RegistrySource],
        entry_point_type: Type[T] = BaseExtensionEntryPoint,
        collaborators: Optional[Collaborators] = None,
        no_cache: bool = False,
        cancel_event: Optional[CancelSignal] = None
    ) -> LoadedExtensions[T]:
        installed = await self.install(configuration, sources, no_cache=no_cache, cancel_event=cancel_event)
        return load_extensions(installed, entry_point_type, collaborators or Collaborators(self.environment))
