"""Data models for the Extension system"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import semver
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from extension_host.core.extensions.exceptions import ConfigurationError
from extension_host.core.extensions.versioning import VersionRange, parse_version


class WatchMode(str, Enum):
    """How a locally-built package is watched for changes"""
    NONE = "none"
    OUTPUT_ONLY = "output_only"
    FULL = "full"


class DependencyKind(str, Enum):
    """Role of a package within an installed set"""
    ROOT_PACKAGE = "rootPackage"
    ADDITIONAL_ROOT = "additionalRoot"
    DEPENDENCY = "package"

    @property
    def is_root(self) -> bool:
        return self in (DependencyKind.ROOT_PACKAGE, DependencyKind.ADDITIONAL_ROOT)


_WATCH_ALIASES = {
    "none": WatchMode.NONE,
    "off": WatchMode.NONE,
    "output": WatchMode.OUTPUT_ONLY,
    "outputonly": WatchMode.OUTPUT_ONLY,
    "output_only": WatchMode.OUTPUT_ONLY,
    "default": WatchMode.OUTPUT_ONLY,
    "full": WatchMode.FULL,
}


# ============================================
# Configuration surface
# ============================================

class ExtensionSpec(BaseModel):
    """A registry extension requested by the host configuration"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    package: str = Field(description="Package id")
    version: Optional[str] = Field(default=None, description="Version range in interval notation")
    prerelease: bool = Field(default=False, description="Allow prerelease versions")

    @field_validator("package")
    @classmethod
    def validate_package(cls, v: str) -> str:
        if v is None or not str(v).strip():
            raise ConfigurationError("Extension package id must not be empty")
        return str(v).strip()

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v: Any, info) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        if not text:
            return None
        VersionRange.parse_config(text, info.data.get("package", ""))
        return text

    @property
    def package_id(self) -> str:
        return self.package

    @property
    def version_range(self) -> Optional[VersionRange]:
        if self.version is None:
            return None
        return VersionRange.parse(self.version)


class LocalExtensionSpec(BaseModel):
    """A locally-built extension project requested by the host configuration"""

    model_config = ConfigDict(frozen=True)

    folder: str = Field(description="Project folder, relative to the host root")
    watch: WatchMode = Field(default=WatchMode.OUTPUT_ONLY)

    @field_validator("folder")
    @classmethod
    def validate_folder(cls, v: str) -> str:
        if v is None or not str(v).strip():
            raise ConfigurationError("Local extension folder must not be empty")
        return str(v).strip()

    @field_validator("watch", mode="before")
    @classmethod
    def validate_watch(cls, v: Any) -> WatchMode:
        if v is None:
            return WatchMode.OUTPUT_ONLY
        if isinstance(v, WatchMode):
            return v
        if isinstance(v, bool):
            return WatchMode.FULL if v else WatchMode.OUTPUT_ONLY
        key = str(v).strip().lower().replace("-", "_")
        if key in ("true", "yes"):
            return WatchMode.FULL
        if key in ("false", "no"):
            return WatchMode.OUTPUT_ONLY
        if key not in _WATCH_ALIASES:
            raise ConfigurationError(f"Unknown watch mode: {v}")
        return _WATCH_ALIASES[key]

    @property
    def folder_path(self) -> str:
        return self.folder

    @property
    def watch_mode(self) -> WatchMode:
        return self.watch


class ExtensionsConfiguration(BaseModel):
    """The extension section of a host configuration"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    extensions: List[ExtensionSpec] = Field(default_factory=list)
    local_extensions: List[LocalExtensionSpec] = Field(
        default_factory=list,
        alias="localExtensions"
    )

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ExtensionsConfiguration":
        """
        Bind configuration data

        Raises:
            ConfigurationError: If the data does not describe valid extensions
        """
        data = dict(data or {})
        if "local_extensions" in data and "localExtensions" not in data:
            data["localExtensions"] = data.pop("local_extensions")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid extension configuration: {e}") from e

    @classmethod
    def from_file(cls, path: Path) -> "ExtensionsConfiguration":
        """Load configuration from a YAML or JSON file"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        return cls.from_mapping(data)


# ============================================
# Package graph
# ============================================

class PackageIdentity:
    """Immutable (id, concrete version) pair; ids compare case-insensitively"""

    __slots__ = ("id", "version")

    def __init__(self, id: str, version: semver.Version):
        if isinstance(version, str):
            version = parse_version(version)
        object.__setattr__(self, "id", id)
        object.__setattr__(self, "version", version)

    def __setattr__(self, name, value):
        raise AttributeError("PackageIdentity is immutable")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self.id.lower() == other.id.lower() and self.version == other.version

    def __hash__(self) -> int:
        return hash((self.id.lower(), self.version))

    def __repr__(self) -> str:
        return f"PackageIdentity({self.id!r}, {str(self.version)!r})"

    def __str__(self) -> str:
        return f"{self.id} {self.version}"

    @property
    def folder_name(self) -> str:
        return f"{self.id}.{self.version}"


class PackageDependency(BaseModel):
    """A declared dependency edge"""

    model_config = ConfigDict(frozen=True)

    id: str
    version: Optional[str] = None

    @property
    def version_range(self) -> Optional[VersionRange]:
        if not self.version:
            return None
        return VersionRange.parse(self.version)


class PackageMetadata(BaseModel):
    """An installed package"""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    version: str
    install_folder: Path
    entry_point: Optional[str] = Field(
        default=None,
        description="Entry point module path relative to the install folder"
    )
    library_files: List[str] = Field(default_factory=list)
    dependency_kind: DependencyKind = DependencyKind.DEPENDENCY
    dependency_ids: List[str] = Field(default_factory=list)

    def get_path(self, *parts: str) -> Path:
        return self.install_folder.joinpath(*parts)


class LocalExtensionPackageMetadata(PackageMetadata):
    """An installed package built from a local project"""

    source_project_file: Path
    source_project_folder: Path
    source_binary_directory: Path
    source_files: List[Path] = Field(default_factory=list)
    watch_mode: WatchMode = WatchMode.OUTPUT_ONLY


class InstalledExtensionPackages:
    """The result of installing a package set"""

    def __init__(self, packages: List[PackageMetadata]):
        self.packages: List[PackageMetadata] = list(packages)

    def __iter__(self):
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def top_level_packages(self) -> List[PackageMetadata]:
        return [p for p in self.packages if p.dependency_kind == DependencyKind.ROOT_PACKAGE]

    def find(self, package_id: str) -> Optional[PackageMetadata]:
        key = package_id.lower()
        for package in self.packages:
            if package.id.lower() == key:
                return package
        return None

    def missing_dependencies(self, host_supplied=None) -> Dict[str, List[str]]:
        """Dependency ids not satisfied inside the collection, per package"""
        present = {p.id.lower() for p in self.packages}
        missing: Dict[str, List[str]] = {}
        for package in self.packages:
            for dep in package.dependency_ids:
                if dep.lower() in present:
                    continue
                if host_supplied is not None and host_supplied(dep):
                    continue
                missing.setdefault(package.id, []).append(dep)
        return missing

    def load(self, entry_point_type, collaborators):
        """Load the packages into a fresh isolated context"""
        from extension_host.core.extensions.loader import load_extensions
        return load_extensions(self, entry_point_type, collaborators)
