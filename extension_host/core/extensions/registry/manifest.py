"""Package manifest and installed package folder layout

A package archive carries ``package.json`` at its root and its library
modules under ``lib/``:

    package.json
    lib/foo_ext.py
    lib/foo_ext_helpers/__init__.py
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from extension_host.core.extensions.exceptions import InstallationError
from extension_host.core.extensions.models import PackageDependency
from extension_host.core.extensions.versioning import parse_version

logger = logging.getLogger(__name__)

MANIFEST_FILE = "package.json"
LIB_DIR = "lib"


class PackageManifest(BaseModel):
    """package.json schema"""
    id: str = Field(description="Package id")
    version: str = Field(description="Semantic version")
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    dependencies: List[PackageDependency] = Field(default_factory=list)
    entry_point: Optional[str] = Field(
        default=None,
        description="Entry point module, relative to the package root"
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        parse_version(v)
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v):
        # Accept the space separated form as well as a list
        if isinstance(v, str):
            return [t for t in re.split(r"[\s,;]+", v) if t]
        return v

    def has_tag(self, tag: str) -> bool:
        wanted = tag.lower()
        return any(t.lower() == wanted for t in self.tags)


def module_name_for(package_id: str) -> str:
    """Default entry module name for a package id: ``My.Ext-Pkg`` -> ``my_ext_pkg``"""
    return re.sub(r"[^0-9a-zA-Z_]", "_", package_id).lower()


def parse_manifest(raw: bytes, source: str = "") -> PackageManifest:
    try:
        return PackageManifest.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise InstallationError(f"Invalid package manifest {source}: {e}") from e


def read_manifest(package_dir: Path) -> PackageManifest:
    """
    Read package.json from an installed package folder

    Raises:
        InstallationError: If the manifest is missing or invalid
    """
    manifest_path = package_dir / MANIFEST_FILE
    try:
        raw = manifest_path.read_bytes()
    except OSError as e:
        raise InstallationError(f"Cannot read package manifest {manifest_path}: {e}") from e
    return parse_manifest(raw, str(manifest_path))


def scan_library_files(package_dir: Path) -> List[str]:
    """Library module paths (posix, relative to the package folder), sorted"""
    lib_dir = package_dir / LIB_DIR
    if not lib_dir.is_dir():
        return []
    return sorted(
        p.relative_to(package_dir).as_posix()
        for p in lib_dir.rglob("*.py")
        if p.is_file() and "__pycache__" not in p.parts
    )


def find_entry_point(
    manifest: PackageManifest,
    library_files: List[str],
    entry_point_tag: Optional[str]
) -> Optional[str]:
    """
    Entry point module for an installed package

    Only packages carrying the entry point tag (when one is configured)
    expose an entry point.
    """
    if entry_point_tag is not None and not manifest.has_tag(entry_point_tag):
        return None

    if manifest.entry_point:
        declared = manifest.entry_point.replace("\\", "/").lstrip("/")
        if declared in library_files:
            return declared
        logger.warning(f"Declared entry point {declared} not found in package {manifest.id}")
        return None

    module = module_name_for(manifest.id)
    for candidate in (f"{LIB_DIR}/{module}.py", f"{LIB_DIR}/{module}/__init__.py"):
        if candidate in library_files:
            return candidate
    return None
