"""Local extension project files and the project graph

A local extension is a folder holding an ``extension.yaml`` project file:

    name: my-extension
    package_id: My.Extension        # optional, defaults to name
    version: 1.2.0                  # optional, defaults to 1.0.0
    module: my_extension            # entry module, defaults to the normalized name
    output_dir: build
    build_command: ["python", "build.py"]   # optional
    references: ["../shared"]
    dependencies:
      - id: Some.Package
        version: "[1.0,2.0)"
      - id: Build.Only.Tool
        private_assets: all
    sources: ["**/*.py"]
    content:
      - path: "data/*.json"
        copy_to_output: preserve_newest
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from extension_host.core.extensions.exceptions import ConfigurationError
from extension_host.core.extensions.host import HostContext
from extension_host.core.extensions.models import PackageDependency
from extension_host.core.extensions.registry.manifest import module_name_for
from extension_host.core.extensions.versioning import VersionRange, parse_version

logger = logging.getLogger(__name__)

PROJECT_FILE_NAMES = ("extension.yaml", "extension.yml", "extension.json")
DEFAULT_VERSION = "1.0.0"


class CopyToOutput(str, Enum):
    NEVER = "never"
    ALWAYS = "always"
    PRESERVE_NEWEST = "preserve_newest"


class ProjectDependency(BaseModel):
    """A package reference declared by a project"""
    id: str
    version: Optional[str] = None
    private_assets: List[str] = Field(default_factory=list)
    exclude_assets: List[str] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v):
        if v is None or not str(v).strip():
            return None
        VersionRange.parse(str(v))
        return str(v).strip()

    @field_validator("private_assets", "exclude_assets", mode="before")
    @classmethod
    def split_assets(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [a.strip().lower() for a in v.replace(",", ";").split(";") if a.strip()]
        return [str(a).lower() for a in v]

    @property
    def copied_to_output(self) -> bool:
        if "all" in self.private_assets or "runtime" in self.private_assets:
            return False
        return "runtime" not in self.exclude_assets

    def as_dependency(self) -> PackageDependency:
        return PackageDependency(id=self.id, version=self.version)


class ContentItem(BaseModel):
    path: str
    copy_to_output: CopyToOutput = CopyToOutput.NEVER


class ProjectManifest(BaseModel):
    """Schema of a local extension project file"""
    name: str
    package_id: Optional[str] = None
    version: Optional[str] = None
    module: Optional[str] = None
    output_dir: str = "build"
    build_command: Optional[List[str]] = None
    references: List[str] = Field(default_factory=list)
    dependencies: List[ProjectDependency] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=lambda: ["**/*.py"])
    content: List[ContentItem] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v):
        if v is None or not str(v).strip():
            return None
        parse_version(str(v))
        return str(v).strip()


def find_project_file(folder: Path) -> Optional[Path]:
    """First recognized project file in a folder"""
    for name in PROJECT_FILE_NAMES:
        candidate = folder / name
        if candidate.is_file():
            return candidate
    return None


class LocalProject:
    """A loaded project file"""

    def __init__(self, project_file: Path, manifest: ProjectManifest):
        self.project_file = project_file
        self.folder = project_file.parent
        self.manifest = manifest

    @classmethod
    def load(cls, project_file: Path) -> "LocalProject":
        """
        Load a project file

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        project_file = Path(project_file).resolve()
        try:
            with open(project_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls(project_file, ProjectManifest.model_validate(data))
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise ConfigurationError(f"Invalid project file {project_file}: {e}") from e

    @property
    def package_id(self) -> str:
        return self.manifest.package_id or self.manifest.name

    @property
    def version(self) -> str:
        return self.manifest.version or DEFAULT_VERSION

    @property
    def module(self) -> str:
        return self.manifest.module or module_name_for(self.manifest.name)

    @property
    def output_directory(self) -> Path:
        return (self.folder / self.manifest.output_dir).resolve()

    def entry_point_candidates(self) -> List[str]:
        return [f"{self.module}.py", f"{self.module}/__init__.py"]

    def referenced_project_files(self) -> List[Path]:
        files = []
        for reference in self.manifest.references:
            target = (self.folder / reference).resolve()
            project_file = target if target.is_file() else find_project_file(target)
            if project_file is None:
                raise ConfigurationError(
                    f"Project {self.project_file} references {reference}, "
                    f"which has no project file"
                )
            files.append(project_file.resolve())
        return files

    def glob_files(self, pattern: str) -> List[Path]:
        output = self.output_directory
        found = []
        for path in self.folder.glob(pattern):
            if not path.is_file():
                continue
            resolved = path.resolve()
            if resolved == output or output in resolved.parents:
                continue
            if "__pycache__" in resolved.parts:
                continue
            found.append(resolved)
        return found

    def source_files(self) -> List[Path]:
        """Files whose change requires a rebuild"""
        files: Dict[Path, None] = {}
        for pattern in self.manifest.sources:
            for path in self.glob_files(pattern):
                files[path] = None
        for item in self.manifest.content:
            if item.copy_to_output is CopyToOutput.NEVER:
                continue
            for path in self.glob_files(item.path):
                files[path] = None
        return sorted(files)


class ProjectGraph:
    """All projects reachable from a batch of entry project files"""

    def __init__(self, entry_files: List[Union[str, Path]]):
        self.nodes: Dict[Path, LocalProject] = {}
        self.edges: Dict[Path, List[Path]] = {}
        self.entries: List[LocalProject] = []

        for entry in entry_files:
            project = self._visit(Path(entry).resolve(), stack=[])
            if project not in self.entries:
                self.entries.append(project)

    def _visit(self, project_file: Path, stack: List[Path]) -> LocalProject:
        if project_file in stack:
            chain = " -> ".join(str(p) for p in stack + [project_file])
            raise ConfigurationError(f"Circular project reference: {chain}")
        if project_file in self.nodes:
            return self.nodes[project_file]

        project = LocalProject.load(project_file)
        self.nodes[project_file] = project
        self.edges[project_file] = project.referenced_project_files()
        for reference in self.edges[project_file]:
            self._visit(reference, stack + [project_file])
        return project

    @property
    def roots(self) -> List[LocalProject]:
        """Projects no other project in the graph references"""
        referenced = {ref for refs in self.edges.values() for ref in refs}
        return [project for path, project in self.nodes.items() if path not in referenced]

    def dependencies(self, host_context: HostContext) -> List[PackageDependency]:
        """External package dependencies the built projects need at runtime"""
        found: Dict[str, PackageDependency] = {}
        for project in self.nodes.values():
            for declared in project.manifest.dependencies:
                if not declared.copied_to_output:
                    continue
                dependency = declared.as_dependency()
                if host_context.dependency_supplied_by_host(dependency):
                    continue
                found.setdefault(dependency.id.lower(), dependency)
        return list(found.values())
