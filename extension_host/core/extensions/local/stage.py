"""Default build program for local extension projects

Copies a project's sources and copy-to-output content into its output
directory, building referenced projects first and merging their output.

Usage:
    python -m extension_host.core.extensions.local.stage <project file>
"""

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional, Set

from extension_host.core.extensions.exceptions import ExtensionError
from extension_host.core.extensions.local.project import CopyToOutput, LocalProject

logger = logging.getLogger(__name__)


def _copy(source: Path, destination: Path, preserve_newest: bool = False) -> bool:
    if preserve_newest and destination.exists():
        if destination.stat().st_mtime >= source.stat().st_mtime:
            return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    return True


def stage(project: LocalProject, built: Optional[Set[Path]] = None) -> int:
    """Stage a project and its references; returns the number of files copied"""
    built = built if built is not None else set()
    if project.project_file in built:
        return 0
    built.add(project.project_file)

    output = project.output_directory
    output.mkdir(parents=True, exist_ok=True)
    copied = 0

    for reference_file in project.referenced_project_files():
        reference = LocalProject.load(reference_file)
        copied += stage(reference, built)
        for path in reference.output_directory.rglob("*"):
            if path.is_file():
                relative = path.relative_to(reference.output_directory)
                copied += _copy(path, output / relative, preserve_newest=True)

    for pattern in project.manifest.sources:
        for path in project.glob_files(pattern):
            copied += _copy(path, output / path.relative_to(project.folder))

    for item in project.manifest.content:
        if item.copy_to_output is CopyToOutput.NEVER:
            continue
        preserve = item.copy_to_output is CopyToOutput.PRESERVE_NEWEST
        for path in project.glob_files(item.path):
            copied += _copy(path, output / path.relative_to(project.folder), preserve_newest=preserve)

    logger.info(f"{project.package_id} -> {output} ({copied} file(s) copied)")
    return copied


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Stage a local extension project")
    parser.add_argument("project_file", help="Path to the project file")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        stage(LocalProject.load(Path(args.project_file)))
    except (ExtensionError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
