"""Build tool integration for local extension projects"""

import asyncio
import logging
import os
import shutil
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from extension_host.core.extensions.exceptions import BuildError
from extension_host.core.extensions.local.project import LocalProject
from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled

logger = logging.getLogger(__name__)

STAGE_MODULE = "extension_host.core.extensions.local.stage"


class ProcessRun:
    """
    Runs a child process and captures its output

    stdout and stderr are merged into one buffer in the order the process
    writes them.
    """

    def __init__(self, command: Sequence[str], working_directory: Path, env: Optional[dict] = None):
        self.command = list(command)
        self.working_directory = working_directory
        self.env = env
        self.output = ""
        self.exit_code: Optional[int] = None

    async def run(self, cancel_event: Optional[CancelSignal] = None) -> int:
        raise_if_cancelled(cancel_event)
        logger.debug(f"Running {' '.join(self.command)} in {self.working_directory}")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory),
                env=self.env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise BuildError(f"Failed to start build command {self.command[0]}: {e}") from e

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        self.output = stdout.decode("utf-8", errors="replace")
        self.exit_code = process.returncode
        return self.exit_code


@dataclass
class BuildResult:
    success: bool
    output: str
    output_directory: Path


class BuildTool(Protocol):
    """Builds one project; the project folder is the working directory"""

    async def build(self, project: LocalProject, cancel_event: Optional[CancelSignal] = None) -> BuildResult:
        ...


class BuildEnvironment:
    """
    One-time discovery of the build interpreter

    ``ensure_initialized`` is idempotent and safe to call from several
    threads; the first caller does the work.
    """

    def __init__(self, python_executable: Optional[str] = None):
        self._requested = python_executable
        self._lock = threading.Lock()
        self._initialized = False
        self.python_executable: Optional[str] = None
        self.env: dict = {}

    def ensure_initialized(self) -> "BuildEnvironment":
        if self._initialized:
            return self
        with self._lock:
            if self._initialized:
                return self

            executable = self._requested or sys.executable
            if not executable or not (Path(executable).is_file() or shutil.which(executable)):
                raise BuildError(f"Cannot locate a Python interpreter for building local extensions: {executable!r}")

            env = dict(os.environ)
            package_root = str(Path(__file__).resolve().parents[4])
            existing = env.get("PYTHONPATH")
            env["PYTHONPATH"] = package_root if not existing else os.pathsep.join([package_root, existing])

            self.python_executable = executable
            self.env = env
            self._initialized = True
            logger.debug(f"Build environment initialized with {executable}")
        return self

    @property
    def initialized(self) -> bool:
        return self._initialized


class CommandBuildTool:
    """Runs the project's build command, or the bundled stage tool"""

    def __init__(self, environment: BuildEnvironment):
        self.environment = environment

    def command_for(self, project: LocalProject) -> List[str]:
        env = self.environment.ensure_initialized()
        if project.manifest.build_command:
            return list(project.manifest.build_command)
        return [env.python_executable, "-m", STAGE_MODULE, str(project.project_file)]

    async def build(self, project: LocalProject, cancel_event: Optional[CancelSignal] = None) -> BuildResult:
        run = ProcessRun(self.command_for(project), project.folder, env=self.environment.env)
        exit_code = await run.run(cancel_event)

        if exit_code == 0:
            logger.debug(run.output)
        else:
            logger.error(run.output)

        return BuildResult(
            success=exit_code == 0,
            output=run.output,
            output_directory=project.output_directory,
        )


async def build_roots(roots: Sequence[LocalProject], tool: BuildTool, cancel_event: Optional[CancelSignal] = None) -> None:
    """
    Build each graph root once

    Raises:
        BuildError: With the captured output of every failed build
    """
    failures = []
    for project in roots:
        raise_if_cancelled(cancel_event)
        logger.info(f"Building local project {project.package_id}")
        result = await tool.build(project, cancel_event)
        if not result.success:
            failures.append(f"{project.project_file}:\n{result.output}")

    if failures:
        raise BuildError(
            "One or more of the configured local projects could not be built",
            output="\n".join(failures),
        )
