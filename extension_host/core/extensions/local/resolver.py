"""Resolver for locally-built extension projects"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from extension_host.core.extensions.exceptions import ExtensionError, InstallationError
from extension_host.core.extensions.host import HostContext, HostEnvironment
from extension_host.core.extensions.local.build import (
    BuildEnvironment,
    BuildTool,
    CommandBuildTool,
    build_roots,
)
from extension_host.core.extensions.local.project import (
    PROJECT_FILE_NAMES,
    LocalProject,
    ProjectGraph,
    find_project_file,
)
from extension_host.core.extensions.models import (
    DependencyKind,
    InstalledExtensionPackages,
    LocalExtensionPackageMetadata,
    LocalExtensionSpec,
    WatchMode,
)
from extension_host.core.extensions.package_sets import EmptyValidPackageSet, InvalidPackageSet
from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled

logger = logging.getLogger(__name__)


class LocalExtensionResolver:
    """Builds configured local projects and exposes them as packages"""

    def __init__(
        self,
        environment: HostEnvironment,
        host_context: HostContext,
        build_environment: Optional[BuildEnvironment] = None,
        build_tool: Optional[BuildTool] = None
    ):
        self.environment = environment
        self.host_context = host_context
        self.build_environment = build_environment or BuildEnvironment()
        self.build_tool = build_tool or CommandBuildTool(self.build_environment)

    def resolve_project_file(self, spec: LocalExtensionSpec) -> Path:
        """
        Locate the project file for a configured folder

        Raises:
            ExtensionError: If the folder is missing or holds no project file
        """
        directory = Path(spec.folder)
        if not directory.is_absolute():
            directory = self.environment.root_directory / directory
        directory = directory.resolve()

        if not directory.is_dir():
            raise ExtensionError(f"Configured extension folder '{directory}' does not exist")

        project_file = find_project_file(directory)
        if project_file is None:
            raise ExtensionError(
                f"Configured extension folder '{directory}' does not contain a project file "
                f"({', '.join(PROJECT_FILE_NAMES)})"
            )

        logger.debug(f"Including project file '{project_file}' as a local extension")
        return project_file.resolve()

    async def resolve_packages(self, context, cancel_event: Optional[CancelSignal] = None):
        if not context.local_extensions:
            return EmptyValidPackageSet()

        watch_modes: Dict[Path, WatchMode] = {}
        errors: List[str] = []

        for spec in context.local_extensions:
            try:
                project_file = self.resolve_project_file(spec)
            except ExtensionError as e:
                logger.error(str(e))
                errors.append(str(e))
                continue
            watch_modes.setdefault(project_file, spec.watch)

        if errors:
            return InvalidPackageSet(ExtensionError("; ".join(errors)))

        try:
            logger.info("Building local projects")
            graph = ProjectGraph(list(watch_modes))
            dependencies = graph.dependencies(self.host_context)

            self.build_environment.ensure_initialized()
            await build_roots(graph.roots, self.build_tool, cancel_event)
        except ExtensionError as e:
            return InvalidPackageSet(e)

        logger.info("Local projects built successfully")
        context.additional_packages_required.extend(dependencies)

        return LocalInstallableSet(
            [(project, watch_modes[project.project_file]) for project in graph.entries],
            self.environment.extensions_directory,
            self.host_context,
        )


class LocalInstallableSet:
    """Copies each built project's output into the extensions directory"""

    is_valid = True
    error = None

    def __init__(self, projects, extensions_directory: Path, host_context: HostContext):
        self.projects = list(projects)
        self.extensions_directory = Path(extensions_directory)
        self.host_context = host_context
        self.package_ids = [project.package_id for project, _ in self.projects]

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        packages = []
        for project, watch_mode in self.projects:
            raise_if_cancelled(cancel_event)
            packages.append(await self._install_project(project, watch_mode, cancel_event))
        return InstalledExtensionPackages(packages)

    async def _install_project(
        self,
        project: LocalProject,
        watch_mode: WatchMode,
        cancel_event: Optional[CancelSignal]
    ) -> LocalExtensionPackageMetadata:
        source = project.output_directory
        if not source.is_dir():
            raise InstallationError(
                f"Build output directory {source} for {project.package_id} does not exist"
            )

        destination = self.extensions_directory / f"{project.package_id}.{project.version}"
        if destination.exists():
            await asyncio.to_thread(shutil.rmtree, destination)

        files = await asyncio.to_thread(
            lambda: [p for p in source.rglob("*") if p.is_file() and "__pycache__" not in p.parts]
        )
        for path in files:
            raise_if_cancelled(cancel_event)
            target = destination / path.relative_to(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, path, target)

        library_files = sorted(
            path.relative_to(source).as_posix() for path in files if path.suffix == ".py"
        )
        entry_point = next(
            (c for c in project.entry_point_candidates() if c in library_files),
            None,
        )
        if entry_point is None:
            logger.warning(f"Local project {project.package_id} has no entry module {project.module}")

        dependency_ids = [
            d.id for d in project.manifest.dependencies
            if d.copied_to_output and not self.host_context.dependency_supplied_by_host(d.as_dependency())
        ]

        logger.info(f"Installed local extension {project.package_id} {project.version} -> {destination}")

        return LocalExtensionPackageMetadata(
            id=project.package_id,
            version=project.version,
            install_folder=destination,
            entry_point=entry_point,
            library_files=library_files,
            dependency_kind=DependencyKind.ROOT_PACKAGE,
            dependency_ids=dependency_ids,
            source_project_file=project.project_file,
            source_project_folder=project.folder,
            source_binary_directory=source,
            source_files=project.source_files() if watch_mode == WatchMode.FULL else [],
            watch_mode=watch_mode,
        )
