from __future__ import annotations

from pathlib import Path
from typing import List

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from extension_host.core.extensions.models import (
    DependencyKind,
    LocalExtensionPackageMetadata,
    PackageMetadata,
    WatchMode,
)
from extension_host.core.extensions.watch import PackageCollectionWatcher, PackageWatcher


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.running = False
        self.joined = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def join(self):
        self.joined = True


def _local(tmp_path: Path, name: str = "proj", watch_mode: WatchMode = WatchMode.OUTPUT_ONLY) -> LocalExtensionPackageMetadata:
    project = tmp_path / name
    return LocalExtensionPackageMetadata(
        id=f"Local.{name}",
        version="1.0.0",
        install_folder=tmp_path / "ext" / f"Local.{name}.1.0.0",
        dependency_kind=DependencyKind.ROOT_PACKAGE,
        source_project_file=project / "extension.yaml",
        source_project_folder=project,
        source_binary_directory=project / "build",
        source_files=[project / "ext.py"] if watch_mode == WatchMode.FULL else [],
        watch_mode=watch_mode,
    )


def _watcher(metadata: LocalExtensionPackageMetadata, observers: List[FakeObserver]) -> PackageWatcher:
    def factory():
        observer = FakeObserver()
        observers.append(observer)
        return observer

    return PackageWatcher(metadata, observer_factory=factory)


def _collection(observers: List[FakeObserver], created: List[PackageWatcher]) -> PackageCollectionWatcher:
    def factory(metadata):
        watcher = _watcher(metadata, observers)
        created.append(watcher)
        return watcher

    return PackageCollectionWatcher(watcher_factory=factory)


def test_output_only_watches_project_file_and_build_output(tmp_path: Path) -> None:
    watcher = PackageWatcher(_local(tmp_path))
    project = tmp_path / "proj"

    assert watcher.is_watched(str(project / "extension.yaml"))
    assert watcher.is_watched(str(project / "build" / "ext.py"))
    assert not watcher.is_watched(str(project / "ext.py"))
    assert not watcher.is_watched(str(project / "build-notes.txt"))
    assert not watcher.is_watched(None)


def test_full_mode_watches_recorded_sources_only(tmp_path: Path) -> None:
    watcher = PackageWatcher(_local(tmp_path, watch_mode=WatchMode.FULL))
    project = tmp_path / "proj"

    assert watcher.is_watched(str(project / "ext.py"))
    assert watcher.is_watched(str(project / "extension.yaml"))
    assert not watcher.is_watched(str(project / "build" / "ext.py"))
    assert not watcher.is_watched(str(project / "other.py"))


def test_rapid_edits_notify_once_per_dirty_period(tmp_path: Path) -> None:
    watcher = PackageWatcher(_local(tmp_path, watch_mode=WatchMode.FULL))
    notified = []
    watcher.add_listener(notified.append)
    source = str(tmp_path / "proj" / "ext.py")

    assert not watcher.handle_event(str(tmp_path / "proj" / "unrelated.txt"))
    assert watcher.handle_event(source)
    for _ in range(5):
        assert not watcher.handle_event(source)
    assert [m.id for m in notified] == ["Local.proj"]
    assert watcher.is_dirty

    watcher.reset()
    assert watcher.handle_event(source)
    assert len(notified) == 2


def test_moves_are_classified_by_destination(tmp_path: Path) -> None:
    watcher = PackageWatcher(_local(tmp_path))
    assert watcher.handle_event(str(tmp_path / "elsewhere.tmp"), str(tmp_path / "proj" / "build" / "ext.py"))


def test_observer_events_reach_the_watcher(tmp_path: Path) -> None:
    observers: List[FakeObserver] = []
    watcher = _watcher(_local(tmp_path), observers)
    watcher.start()
    watcher.start()

    assert len(observers) == 1
    handler, path, recursive = observers[0].scheduled[0]
    assert path == str(tmp_path / "proj")
    assert recursive
    assert observers[0].running

    build = tmp_path / "proj" / "build"
    handler.dispatch(DirModifiedEvent(str(build)))
    assert not watcher.is_dirty

    handler.dispatch(FileMovedEvent(str(tmp_path / "x.tmp"), str(build / "ext.py")))
    assert watcher.is_dirty

    watcher.close()
    assert observers[0].joined
    assert not observers[0].running


def test_collection_starts_suspended_and_latches(tmp_path: Path) -> None:
    observers: List[FakeObserver] = []
    created: List[PackageWatcher] = []
    collection = _collection(observers, created)
    dirty = []
    collection.add_dirty_listener(dirty.append)

    registry_package = PackageMetadata(id="Registry.Pkg", version="1.0.0", install_folder=tmp_path / "r")
    collection.sync_packages([
        registry_package,
        _local(tmp_path, "one"),
        _local(tmp_path, "quiet", watch_mode=WatchMode.NONE),
    ])
    assert len(collection.watched_folders) == 1
    assert collection.suspended
    assert observers == []

    one_output = str(tmp_path / "one" / "build" / "ext.py")
    watcher = created[0]

    watcher.handle_event(one_output)
    assert dirty == []

    collection.start()
    collection.reset()
    assert len(observers) == 1

    watcher.handle_event(one_output)
    watcher.handle_event(one_output)
    assert [m.id for m in dirty] == ["Local.one"]
    assert collection.is_dirty

    collection.reset()
    watcher.handle_event(one_output)
    assert len(dirty) == 2

    collection.close()
    assert collection.watched_folders == []


def test_sync_updates_adds_and_removes_watchers(tmp_path: Path) -> None:
    observers: List[FakeObserver] = []
    created: List[PackageWatcher] = []
    collection = _collection(observers, created)
    collection.start()

    collection.sync_packages([_local(tmp_path, "one"), _local(tmp_path, "two")])
    assert len(observers) == 2

    updated = _local(tmp_path, "one", watch_mode=WatchMode.FULL)
    collection.sync_packages([updated])

    assert len(collection.watched_folders) == 1
    assert len(created) == 2
    assert created[0].metadata.watch_mode == WatchMode.FULL
    assert observers[1].joined


@pytest.mark.parametrize("mode", [WatchMode.OUTPUT_ONLY, WatchMode.FULL])
def test_project_file_always_dirties(tmp_path: Path, mode: WatchMode) -> None:
    watcher = PackageWatcher(_local(tmp_path, watch_mode=mode))
    assert watcher.handle_event(str(tmp_path / "proj" / "extension.yaml"))


def test_file_modified_event_dispatch(tmp_path: Path) -> None:
    observers: List[FakeObserver] = []
    watcher = _watcher(_local(tmp_path), observers)
    watcher.start()
    handler = observers[0].scheduled[0][0]

    handler.dispatch(FileModifiedEvent(str(tmp_path / "proj" / "README.md")))
    assert not watcher.is_dirty
    handler.dispatch(FileModifiedEvent(str(tmp_path / "proj" / "build" / "ext.py")))
    assert watcher.is_dirty


def test_suspended_collection_ignores_changes_until_started(tmp_path: Path) -> None:
    observers: List[FakeObserver] = []
    created: List[PackageWatcher] = []
    collection = _collection(observers, created)
    dirty = []
    collection.add_dirty_listener(dirty.append)
    collection.sync_packages([_local(tmp_path, "one")])
    collection.start()

    collection.suspend()
    assert collection.suspended
    created[0].handle_event(str(tmp_path / "one" / "extension.yaml"))
    assert dirty == []
    assert not collection.is_dirty
