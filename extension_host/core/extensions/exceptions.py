"""Exception classes for the Extension system"""

from typing import List, Sequence


class ExtensionError(Exception):
    """Base exception for all extension-related errors"""
    pass


class ConfigurationError(ExtensionError):
    """Raised when extension configuration is malformed"""
    pass


class ResolutionError(ExtensionError):
    """Raised when a consistent package set cannot be resolved"""
    pass


class PackageNotFoundError(ResolutionError):
    """Raised when no source can supply a requested package"""

    def __init__(self, package_id: str, message: str = ""):
        self.package_id = package_id
        super().__init__(message or f"Could not locate package '{package_id}' in any configured source")


class BuildError(ExtensionError):
    """Raised when a local extension project fails to build"""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.output:
            return f"{base}\n{self.output}"
        return base


class CacheError(ExtensionError):
    """Raised when the dependency cache cannot be read or written"""
    pass


class InstallationError(ExtensionError):
    """Raised when extension installation fails"""
    pass


class DownloadError(InstallationError):
    """Raised when extension download fails"""
    pass


class ExtensionLoadError(ExtensionError):
    """Raised when an installed extension cannot be loaded"""
    pass


class EntryPointNotFoundError(ExtensionLoadError):
    """Raised when a root package exposes no entry point"""
    pass


class AmbiguousEntryPointError(ExtensionLoadError):
    """Raised when a package exposes more than one entry point type"""
    pass


class BadConstructorError(ExtensionLoadError):
    """Raised when an entry point constructor asks for unsupported arguments"""
    pass


class EntryPointConstructionError(ExtensionLoadError):
    """Raised when an entry point constructor raises"""
    pass


class AggregateExtensionError(ExtensionError):
    """Several independent failures, reported together"""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors: List[BaseException] = list(errors)
        lines = [f"{len(self.errors)} extension error(s) occurred:"]
        lines.extend(f"  - {err}" for err in self.errors)
        super().__init__("\n".join(lines))
