from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import yaml

from extension_host.core.extensions.host import HostContext, HostEnvironment
from extension_host.core.extensions.registry.manifest import module_name_for


def _write_package_zip(
    folder: Path,
    package_id: str,
    version: str,
    dependencies: Optional[List[Dict[str, str]]] = None,
    files: Optional[Dict[str, str]] = None,
    tags: Optional[List[str]] = None,
    entry_point: Optional[str] = None,
) -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    manifest = {
        "id": package_id,
        "version": version,
        "dependencies": dependencies or [],
        "tags": tags or [],
    }
    if entry_point:
        manifest["entry_point"] = entry_point
    if files is None:
        files = {f"lib/{module_name_for(package_id)}.py": "VALUE = 1\n"}

    archive = folder / f"{package_id}.{version}.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("package.json", json.dumps(manifest))
        for name, content in files.items():
            zf.writestr(name, content)
    return archive


@pytest.fixture
def package_folder(tmp_path: Path) -> Path:
    return tmp_path / "packages"


@pytest.fixture
def make_package(package_folder: Path) -> Callable[..., Path]:
    """Write a package archive into a folder source (default: package_folder)"""

    def _make(package_id: str, version: str, folder: Optional[Path] = None, **kwargs) -> Path:
        return _write_package_zip(folder or package_folder, package_id, version, **kwargs)

    return _make


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Write a local extension project folder under the host root"""

    def _make(folder: str, manifest: dict, files: Optional[Dict[str, str]] = None) -> Path:
        project_dir = tmp_path / "host" / folder
        project_dir.mkdir(parents=True, exist_ok=True)
        (project_dir / "extension.yaml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
        for name, content in (files or {}).items():
            path = project_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return project_dir

    return _make


@pytest.fixture
def environment(tmp_path: Path) -> HostEnvironment:
    root = tmp_path / "host"
    root.mkdir(exist_ok=True)
    return HostEnvironment(root)


@pytest.fixture
def host_context() -> HostContext:
    return HostContext(target_runtime="test-runtime")
