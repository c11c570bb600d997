"""Extension resolution, installation and loading

Extensions come from registry sources (archives with a package.json
manifest) or from local project folders built on demand. They are resolved
into one package set, installed into the host's extensions directory,
cached for the next start, and loaded into an isolated module context.

Components:
- models: configuration binding and package metadata
- versioning: semantic versions and interval ranges
- host: host environment and host-supplied libraries
- cache / cache_validator: the dependency cache fast path
- registry: registry sources, solver and resolvers
- local: local project build and install
- composite: combines local and registry resolution
- loader: isolated entry point loading
- watch: rebuild triggers for local packages
- set_loader: top-level facade
"""

from extension_host.core.extensions.exceptions import (
    ExtensionError,
    ConfigurationError,
    ResolutionError,
    PackageNotFoundError,
    BuildError,
    InstallationError,
    DownloadError,
    ExtensionLoadError,
)
from extension_host.core.extensions.models import (
    ExtensionSpec,
    LocalExtensionSpec,
    ExtensionsConfiguration,
    WatchMode,
    DependencyKind,
    PackageMetadata,
    LocalExtensionPackageMetadata,
    InstalledExtensionPackages,
)
from extension_host.core.extensions.host import HostEnvironment, HostContext
from extension_host.core.extensions.entry_point import BaseExtensionEntryPoint, Collaborators
from extension_host.core.extensions.loader import LoadedExtensions, load_extensions
from extension_host.core.extensions.registry.sources import LocalFolderSource, create_source
from extension_host.core.extensions.set_loader import ExtensionSetLoader
from extension_host.core.extensions.watch import PackageCollectionWatcher, PackageWatcher
