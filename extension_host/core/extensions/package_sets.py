"""Installable package set variants"""

from typing import List, Optional, Protocol, runtime_checkable

from extension_host.core.extensions.exceptions import ExtensionError
from extension_host.core.extensions.models import InstalledExtensionPackages, PackageMetadata
from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled


@runtime_checkable
class InstallablePackageSet(Protocol):
    """A resolved set of packages that can be installed"""

    @property
    def package_ids(self) -> List[str]: ...

    @property
    def is_valid(self) -> bool: ...

    @property
    def error(self) -> Optional[BaseException]: ...

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages: ...


def ensure_valid(package_set) -> None:
    """Installing an invalid set is a usage error"""
    if not package_set.is_valid:
        raise ExtensionError(
            f"Cannot install an invalid package set: {package_set.error}"
        ) from package_set.error


class EmptyValidPackageSet:
    """Nothing to install"""

    package_ids: List[str] = []
    is_valid = True
    error = None

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        return InstalledExtensionPackages([])


class InvalidPackageSet:
    """A resolution that failed; carries the failure"""

    is_valid = False

    def __init__(self, error: BaseException):
        self.error = error
        self.package_ids: List[str] = []

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        raise ExtensionError(
            f"Cannot install an invalid package set: {self.error}"
        ) from self.error


class AlreadyInstalledPackageSet:
    """Packages reconstructed from a valid dependency cache"""

    is_valid = True
    error = None

    def __init__(self, packages: List[PackageMetadata]):
        self._packages = list(packages)
        self.package_ids = [p.id for p in self._packages]

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        raise_if_cancelled(cancel_event)
        return InstalledExtensionPackages(self._packages)
