from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import List

import pytest

from extension_host.core.extensions.composite import (
    CompositeInstallablePackageSet,
    CompositeResolver,
    ExtensionResolveContext,
    remove_unused_packages,
)
from extension_host.core.extensions.exceptions import AggregateExtensionError, ExtensionError
from extension_host.core.extensions.models import (
    ExtensionSpec,
    InstalledExtensionPackages,
    PackageDependency,
    PackageMetadata,
)
from extension_host.core.extensions.package_sets import EmptyValidPackageSet, InvalidPackageSet


class RecordingSet:
    def __init__(self, name: str, order: List[str], packages: List[PackageMetadata] = ()):
        self.name = name
        self.order = order
        self.packages = list(packages)
        self.package_ids = [p.id for p in self.packages]
        self.is_valid = True
        self.error = None

    async def install(self, cancel_event=None) -> InstalledExtensionPackages:
        self.order.append(self.name)
        return InstalledExtensionPackages(self.packages)


def _package(ext_dir: Path, package_id: str) -> PackageMetadata:
    folder = ext_dir / f"{package_id}.1.0.0"
    folder.mkdir(parents=True, exist_ok=True)
    return PackageMetadata(id=package_id, version="1.0.0", install_folder=folder)


@pytest.mark.asyncio
async def test_children_install_in_reverse_order(tmp_path: Path) -> None:
    order: List[str] = []
    composite = CompositeInstallablePackageSet([
        RecordingSet("local", order, [_package(tmp_path, "Local")]),
        RecordingSet("registry", order, [_package(tmp_path, "Registry")]),
    ])

    installed = await composite.install()

    assert order == ["registry", "local"]
    assert [p.id for p in installed] == ["Registry", "Local"]
    assert composite.package_ids == ["Local", "Registry"]


@pytest.mark.asyncio
async def test_invalid_child_invalidates_composite(tmp_path: Path) -> None:
    failure = ExtensionError("local build failed")
    composite = CompositeInstallablePackageSet([InvalidPackageSet(failure), EmptyValidPackageSet()])

    assert not composite.is_valid
    assert composite.error is failure
    with pytest.raises(ExtensionError) as exc:
        await composite.install()
    assert exc.value.__cause__ is failure


def test_several_failures_are_aggregated() -> None:
    composite = CompositeInstallablePackageSet([
        InvalidPackageSet(ExtensionError("first")),
        InvalidPackageSet(ExtensionError("second")),
    ])
    error = composite.error
    assert isinstance(error, AggregateExtensionError)
    assert [str(e) for e in error.errors] == ["first", "second"]
    assert "2 extension error(s)" in str(error)


def test_invalid_child_without_error_still_reports_one() -> None:
    composite = CompositeInstallablePackageSet([InvalidPackageSet(None)])
    assert isinstance(composite.error, ExtensionError)
    assert CompositeInstallablePackageSet([EmptyValidPackageSet()]).error is None


@pytest.mark.asyncio
async def test_install_removes_unused_package_folders(tmp_path: Path) -> None:
    ext_dir = tmp_path / ".extensions"
    keep = _package(ext_dir, "Keep")
    _package(ext_dir, "Stale")
    (ext_dir / "extensions.deps.json").write_text("{}", encoding="utf-8")

    composite = CompositeInstallablePackageSet([RecordingSet("registry", [], [keep])], ext_dir)
    await composite.install()

    assert sorted(p.name for p in ext_dir.iterdir()) == ["Keep.1.0.0", "extensions.deps.json"]


def test_remove_unused_packages_without_directory(tmp_path: Path) -> None:
    assert remove_unused_packages(tmp_path / "missing", InstalledExtensionPackages([])) == []


@pytest.mark.asyncio
async def test_resolvers_share_the_context_in_order() -> None:
    seen = []

    class LocalLike:
        async def resolve_packages(self, context, cancel_event=None):
            context.additional_packages_required.append(PackageDependency(id="Runtime.Lib"))
            return EmptyValidPackageSet()

    class RegistryLike:
        async def resolve_packages(self, context, cancel_event=None):
            seen.extend(d.id for d in context.additional_packages_required)
            seen.extend(e.package for e in context.extensions)
            return EmptyValidPackageSet()

    context = ExtensionResolveContext(extensions=[ExtensionSpec(package="A")])
    composite = await CompositeResolver([LocalLike(), RegistryLike()]).resolve_packages(context)

    assert seen == ["Runtime.Lib", "A"]
    assert composite.is_valid
    assert len(composite.children) == 2


@pytest.mark.asyncio
async def test_cancelled_before_resolving() -> None:
    cancel = threading.Event()
    cancel.set()

    class Never:
        async def resolve_packages(self, context, cancel_event=None):
            raise AssertionError("resolver should not run")

    with pytest.raises(asyncio.CancelledError):
        await CompositeResolver([Never()]).resolve_packages(ExtensionResolveContext(), cancel)
