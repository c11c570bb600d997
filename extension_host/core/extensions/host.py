"""Host environment and host context"""

import logging
import re
import sys
from importlib import metadata
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from extension_host.core.config import get_config
from extension_host.core.extensions.exceptions import ConfigurationError
from extension_host.core.extensions.models import PackageDependency
from extension_host.core.extensions.versioning import (
    VersionRange,
    is_prerelease,
    try_parse_version,
)

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    """Canonical form of a package or distribution name"""
    return re.sub(r"[-_.]+", "-", name).lower()


def current_runtime_id() -> str:
    return f"{sys.implementation.name}-{sys.version_info.major}.{sys.version_info.minor}"


class HostEnvironment:
    """
    Directories the host runs from

    Args:
        root_directory: Host root; local extension folders are relative to it
        extensions_directory: Where packages are installed and cached.
            Defaults to ``<root>/<extensions_dir_name>``.

    Raises:
        ConfigurationError: If either directory is not absolute
    """

    def __init__(
        self,
        root_directory: Union[str, Path],
        extensions_directory: Optional[Union[str, Path]] = None
    ):
        root = Path(root_directory)
        if not root.is_absolute():
            raise ConfigurationError(f"Root directory must be an absolute path: {root_directory}")

        if extensions_directory is None:
            extensions = root / get_config().extensions_dir_name
        else:
            extensions = Path(extensions_directory)
            if not extensions.is_absolute():
                raise ConfigurationError(
                    f"Extensions directory must be an absolute path: {extensions_directory}"
                )

        self.root_directory = root
        self.extensions_directory = extensions

    def __repr__(self) -> str:
        return f"HostEnvironment(root={self.root_directory}, extensions={self.extensions_directory})"


class HostContext:
    """
    What the host already provides to extensions

    Args:
        target_runtime: Runtime identifier recorded in the dependency cache
        host_libraries: Library name to version string for libraries the host carries
        entry_point_tag: When set, only packages tagged with it expose an entry point
        runtime_provided: Names the runtime itself provides (never installed)
    """

    def __init__(
        self,
        target_runtime: Optional[str] = None,
        host_libraries: Optional[Dict[str, str]] = None,
        entry_point_tag: Optional[str] = None,
        runtime_provided: Optional[Iterable[str]] = None
    ):
        self.target_runtime = target_runtime or current_runtime_id()
        self.entry_point_tag = entry_point_tag
        self._host_libraries = {
            normalize_name(name): version
            for name, version in (host_libraries or {}).items()
        }
        self._runtime_provided = {normalize_name(n) for n in (runtime_provided or ())}

    @classmethod
    def from_environment(cls, entry_point_tag: Optional[str] = None) -> "HostContext":
        """Build a context from the distributions installed in this interpreter"""
        libraries: Dict[str, str] = {}
        for dist in metadata.distributions():
            name = dist.metadata.get("Name")
            if name and dist.version:
                libraries.setdefault(name, dist.version)

        return cls(
            target_runtime=current_runtime_id(),
            host_libraries=libraries,
            entry_point_tag=entry_point_tag,
            runtime_provided=getattr(sys, "stdlib_module_names", ()),
        )

    def host_library_version(self, name: str) -> Optional[str]:
        return self._host_libraries.get(normalize_name(name))

    def dependency_supplied_by_host(self, dependency: PackageDependency) -> bool:
        """
        True if the dependency must not be installed because the host has it

        A host library counts when its version is a prerelease, when the
        dependency declares no range, or when the range accepts it.
        """
        key = normalize_name(dependency.id)
        if key in self._runtime_provided:
            return True

        host_version_text = self._host_libraries.get(key)
        if host_version_text is None:
            return False

        host_version = try_parse_version(host_version_text)
        if host_version is None:
            # Not semver (e.g. PEP 440 post releases); trust the host copy.
            logger.debug(f"Host library {dependency.id} has non-semantic version {host_version_text}")
            return True

        if is_prerelease(host_version) or not dependency.version:
            return True

        try:
            version_range = VersionRange.parse(dependency.version)
        except ValueError:
            return False
        return version_range.satisfies(host_version)

    def supplies(self, package_id: str, version: Optional[str] = None) -> bool:
        return self.dependency_supplied_by_host(PackageDependency(id=package_id, version=version))
