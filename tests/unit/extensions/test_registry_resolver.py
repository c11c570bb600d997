from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from extension_host.core.extensions.cache import cache_file_path, read_cache
from extension_host.core.extensions.exceptions import PackageNotFoundError
from extension_host.core.extensions.host import HostContext
from extension_host.core.extensions.models import DependencyKind, ExtensionSpec, PackageDependency, PackageIdentity
from extension_host.core.extensions.package_sets import AlreadyInstalledPackageSet, EmptyValidPackageSet
from extension_host.core.extensions.registry.cached import FallbackRegistryResolver
from extension_host.core.extensions.registry.resolver import RegistryResolver
from extension_host.core.extensions.registry.sources import LocalFolderSource
from extension_host.core.extensions.versioning import parse_version


class CountingSource:
    """Wraps a source and counts every registry call"""

    def __init__(self, inner: LocalFolderSource):
        self.inner = inner
        self.name = inner.name
        self.calls = 0

    async def get_versions(self, package_id):
        self.calls += 1
        return await self.inner.get_versions(package_id)

    async def get_dependencies(self, identity):
        self.calls += 1
        return await self.inner.get_dependencies(identity)

    async def download(self, identity, work_dir):
        self.calls += 1
        return await self.inner.download(identity, work_dir)


@pytest.mark.asyncio
async def test_range_selects_lowest_stable_match(make_package, package_folder, environment, host_context) -> None:
    make_package("A", "1.5.0")
    make_package("A", "1.9.0-beta")
    make_package("A", "2.0.0")

    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([ExtensionSpec(package="A", version="[1.0.0,2.0.0)")])

    assert result.is_valid
    assert [str(i.version) for i in result.selected] == ["1.5.0"]


@pytest.mark.asyncio
async def test_root_without_range_takes_highest_stable(make_package, package_folder, environment, host_context) -> None:
    make_package("A", "1.0.0")
    make_package("A", "2.0.0")
    make_package("A", "3.0.0-rc1")

    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([ExtensionSpec(package="A")])
    assert [str(i.version) for i in result.selected] == ["2.0.0"]

    result = await resolver.resolve([ExtensionSpec(package="A", prerelease=True)])
    assert [str(i.version) for i in result.selected] == ["3.0.0-rc1"]


@pytest.mark.asyncio
async def test_later_source_used_when_earlier_has_no_allowed_version(
    make_package, tmp_path: Path, environment, host_context
) -> None:
    first = tmp_path / "first"
    second = tmp_path / "second"
    make_package("A", "2.0.0-alpha", folder=first)
    make_package("A", "1.0.0", folder=second)

    resolver = RegistryResolver(
        [LocalFolderSource(first), LocalFolderSource(second)],
        host_context,
        environment.extensions_directory,
    )
    result = await resolver.resolve([ExtensionSpec(package="A")])
    assert [str(i.version) for i in result.selected] == ["1.0.0"]

    installed = await result.install()
    assert installed.find("A").version == "1.0.0"
    assert (environment.extensions_directory / "A.1.0.0" / "lib" / "a.py").is_file()


@pytest.mark.asyncio
async def test_install_covers_transitive_dependencies(make_package, package_folder, environment) -> None:
    host_context = HostContext(target_runtime="test-runtime", host_libraries={"requests": "2.31.0"})
    make_package("A", "1.0.0", dependencies=[
        {"id": "B", "version": "[1.0,)"},
        {"id": "requests", "version": "[2.0,3.0)"},
    ])
    make_package("B", "1.0.0", dependencies=[{"id": "C"}])
    make_package("B", "1.1.0")
    make_package("C", "0.5.0")
    make_package("C", "0.6.0")

    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([ExtensionSpec(package="A")])
    installed = await result.install()

    versions = {p.id: p.version for p in installed}
    assert versions == {"A": "1.0.0", "B": "1.0.0", "C": "0.5.0"}
    a = installed.find("A")
    assert a.dependency_kind == DependencyKind.ROOT_PACKAGE
    assert a.dependency_ids == ["B"]
    assert a.entry_point == "lib/a.py"
    assert installed.find("B").dependency_kind == DependencyKind.DEPENDENCY
    assert installed.missing_dependencies() == {}


@pytest.mark.asyncio
async def test_additional_dependencies_become_additional_roots(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("Shared", "1.0.0")
    make_package("Shared", "1.2.0")

    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([], [PackageDependency(id="Shared", version="[1.0,2.0)")])
    installed = await result.install()

    shared = installed.find("shared")
    assert shared.version == "1.0.0"
    assert shared.dependency_kind == DependencyKind.ADDITIONAL_ROOT


@pytest.mark.asyncio
async def test_unknown_package_yields_invalid_set(package_folder, environment, host_context) -> None:
    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([ExtensionSpec(package="Ghost")])

    assert not result.is_valid
    assert isinstance(result.error, PackageNotFoundError)
    assert result.error.package_id == "Ghost"


@pytest.mark.asyncio
async def test_missing_transitive_dependency_yields_invalid_set(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("A", "1.0.0", dependencies=[{"id": "Missing", "version": "[1.0,)"}])

    resolver = RegistryResolver([LocalFolderSource(package_folder)], host_context, environment.extensions_directory)
    result = await resolver.resolve([ExtensionSpec(package="A")])

    assert not result.is_valid
    assert "Missing" in str(result.error)


@pytest.mark.asyncio
async def test_second_resolution_is_served_from_cache(make_package, package_folder, environment, host_context) -> None:
    make_package("A", "1.0.0", dependencies=[{"id": "B"}])
    make_package("B", "1.0.0")
    source = CountingSource(LocalFolderSource(package_folder))
    specs = [ExtensionSpec(package="A")]
    ext_dir = environment.extensions_directory

    first = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(specs)
    installed = await first.install()
    assert source.calls > 0

    cache = read_cache(cache_file_path(ext_dir))
    assert cache.runtime == "test-runtime"
    assert {p.id for p in cache.packages} == {"A", "B"}

    source.calls = 0
    second = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(specs)
    assert isinstance(second, AlreadyInstalledPackageSet)
    reinstalled = await second.install()

    assert source.calls == 0
    assert {(p.id, p.version) for p in reinstalled} == {(p.id, p.version) for p in installed}
    assert reinstalled.find("A").dependency_ids == ["B"]


@pytest.mark.asyncio
async def test_cache_bypassed_when_configuration_changes(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("A", "1.0.0")
    make_package("B", "1.0.0")
    source = CountingSource(LocalFolderSource(package_folder))
    ext_dir = environment.extensions_directory

    first = await FallbackRegistryResolver([source], host_context, ext_dir).resolve([ExtensionSpec(package="A")])
    await first.install()

    source.calls = 0
    second = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(
        [ExtensionSpec(package="A"), ExtensionSpec(package="B")]
    )
    assert not isinstance(second, AlreadyInstalledPackageSet)
    assert source.calls > 0
    assert sorted(second.package_ids) == ["A", "B"]


@pytest.mark.asyncio
async def test_no_cache_and_runtime_change_skip_the_cache(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("A", "1.0.0")
    source = CountingSource(LocalFolderSource(package_folder))
    specs = [ExtensionSpec(package="A")]
    ext_dir = environment.extensions_directory

    await (await FallbackRegistryResolver([source], host_context, ext_dir).resolve(specs)).install()

    source.calls = 0
    await FallbackRegistryResolver([source], host_context, ext_dir, no_cache=True).resolve(specs)
    assert source.calls > 0

    source.calls = 0
    other_runtime = HostContext(target_runtime="another-runtime")
    await FallbackRegistryResolver([source], other_runtime, ext_dir).resolve(specs)
    assert source.calls > 0


@pytest.mark.asyncio
async def test_nothing_configured_is_an_empty_valid_set(environment, host_context) -> None:
    result = await FallbackRegistryResolver([], host_context, environment.extensions_directory).resolve([])
    assert isinstance(result, EmptyValidPackageSet)
    assert len(await result.install()) == 0


@pytest.mark.asyncio
async def test_folder_source_indexes_archives(make_package, package_folder) -> None:
    make_package("A", "1.0.0", dependencies=[{"id": "B", "version": "1.0"}])
    make_package("A", "1.1.0")
    (package_folder / "broken.zip").write_bytes(b"not a zip")

    source = LocalFolderSource(package_folder)
    assert await source.get_versions("a") == [parse_version("1.0.0"), parse_version("1.1.0")]
    assert await source.get_versions("nothing") == []

    deps = await source.get_dependencies(PackageIdentity("A", "1.0.0"))
    assert [(d.id, d.version) for d in deps] == [("B", "1.0")]
    assert await source.get_dependencies(PackageIdentity("A", "9.0.0")) is None


class CancellingSource(CountingSource):
    """Sets the cancel event as soon as the named call is made"""

    def __init__(self, inner: LocalFolderSource, cancel: threading.Event, on: str):
        super().__init__(inner)
        self.cancel = cancel
        self.on = on

    async def get_dependencies(self, identity):
        result = await super().get_dependencies(identity)
        if self.on == "get_dependencies":
            self.cancel.set()
        return result

    async def download(self, identity, work_dir):
        result = await super().download(identity, work_dir)
        if self.on == "download":
            self.cancel.set()
        return result


@pytest.mark.asyncio
async def test_additional_root_becomes_root_package_once_configured(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("Shared", "1.0.0")
    source = CountingSource(LocalFolderSource(package_folder))
    ext_dir = environment.extensions_directory

    first = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(
        [], [PackageDependency(id="Shared")]
    )
    installed = await first.install()
    assert installed.find("Shared").dependency_kind == DependencyKind.ADDITIONAL_ROOT

    second = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(
        [ExtensionSpec(package="Shared")]
    )
    assert not isinstance(second, AlreadyInstalledPackageSet)
    reinstalled = await second.install()

    assert reinstalled.find("Shared").dependency_kind == DependencyKind.ROOT_PACKAGE
    assert [p.type for p in read_cache(cache_file_path(ext_dir)).packages] == [DependencyKind.ROOT_PACKAGE]


@pytest.mark.asyncio
async def test_cancellation_during_expansion_propagates(
    make_package, package_folder, environment, host_context
) -> None:
    make_package("A", "1.0.0", dependencies=[{"id": "B"}])
    make_package("B", "1.0.0")
    cancel = threading.Event()
    source = CancellingSource(LocalFolderSource(package_folder), cancel, on="get_dependencies")
    resolver = RegistryResolver([source], host_context, environment.extensions_directory)

    with pytest.raises(asyncio.CancelledError):
        await resolver.resolve([ExtensionSpec(package="A")], cancel_event=cancel)


@pytest.mark.asyncio
async def test_cancelled_install_writes_no_cache(make_package, package_folder, environment, host_context) -> None:
    make_package("A", "1.0.0", dependencies=[{"id": "B"}])
    make_package("B", "1.0.0")
    cancel = threading.Event()
    source = CancellingSource(LocalFolderSource(package_folder), cancel, on="download")
    ext_dir = environment.extensions_directory

    package_set = await FallbackRegistryResolver([source], host_context, ext_dir).resolve(
        [ExtensionSpec(package="A")], cancel_event=cancel
    )
    assert package_set.is_valid

    with pytest.raises(asyncio.CancelledError):
        await package_set.install(cancel)

    assert not cache_file_path(ext_dir).exists()
    folders = [p.name for p in ext_dir.iterdir() if p.is_dir()]
    assert len(folders) == 1
    assert folders[0] in {"A.1.0.0", "B.1.0.0"}
    assert (ext_dir / folders[0] / "package.json").is_file()
