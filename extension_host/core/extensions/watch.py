"""Change watching for locally-built extension packages"""

import logging
import os
import threading
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from extension_host.core.extensions.models import LocalExtensionPackageMetadata, WatchMode

logger = logging.getLogger(__name__)

PackageListener = Callable[[LocalExtensionPackageMetadata], None]

_WATCHED_EVENTS = {"created", "deleted", "modified", "moved"}


def _normalize(path) -> str:
    return os.path.normcase(os.path.abspath(str(path)))


class _WatcherEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "PackageWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _WATCHED_EVENTS:
            return
        # A directory "modified" event always accompanies a file event inside it
        if event.is_directory and event.event_type == "modified":
            return
        self.watcher.handle_event(event.src_path, getattr(event, "dest_path", None) or None)


class PackageWatcher:
    """
    Watches one local package's project folder

    The package becomes dirty on the first change to a watched path and
    stays dirty, ignoring further changes, until ``reset``.
    """

    def __init__(self, metadata: LocalExtensionPackageMetadata, observer_factory: Callable = Observer):
        self._lock = threading.Lock()
        self._listeners: List[PackageListener] = []
        self._observer_factory = observer_factory
        self._observer = None
        self._dirty = False
        self._apply(metadata)

    def _apply(self, metadata: LocalExtensionPackageMetadata) -> None:
        self.metadata = metadata
        self._project_file = _normalize(metadata.source_project_file)
        self._source_files = {_normalize(p) for p in metadata.source_files}
        self._binary_prefix = _normalize(metadata.source_binary_directory).rstrip(os.sep) + os.sep

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def add_listener(self, listener: PackageListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PackageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_watched(self, path: Optional[str]) -> bool:
        """True if a change to path makes the package dirty"""
        if not path:
            return False
        normalized = _normalize(path)

        if normalized == self._project_file:
            return True

        if self.metadata.watch_mode == WatchMode.FULL:
            return normalized in self._source_files

        return normalized.startswith(self._binary_prefix)

    def handle_event(self, path: Optional[str], dest_path: Optional[str] = None) -> bool:
        """Classify a changed path; returns True if it made the package dirty"""
        if self._dirty:
            return False
        if not (self.is_watched(path) or self.is_watched(dest_path)):
            return False

        with self._lock:
            if self._dirty:
                return False
            self._dirty = True
            metadata = self.metadata

        logger.debug(f"Package {metadata.id} is dirty after change to {dest_path or path}")
        for listener in list(self._listeners):
            listener(metadata)
        return True

    def update(self, metadata: LocalExtensionPackageMetadata) -> None:
        with self._lock:
            self._apply(metadata)

    def reset(self) -> None:
        with self._lock:
            self._dirty = False

    def start(self) -> None:
        if self._observer is not None:
            return
        folder = str(self.metadata.source_project_folder)
        observer = self._observer_factory()
        observer.schedule(_WatcherEventHandler(self), folder, recursive=True)
        observer.start()
        self._observer = observer
        logger.debug(f"Watching {folder} for changes to {self.metadata.id}")

    def close(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()


class PackageCollectionWatcher:
    """
    Watches every locally-built package of an installed set

    Starts suspended. The first dirty package seen while running raises
    one notification; later ones are ignored until ``reset``.
    """

    def __init__(self, watcher_factory: Optional[Callable[[LocalExtensionPackageMetadata], PackageWatcher]] = None):
        self._watcher_factory = watcher_factory or PackageWatcher
        self._watchers: Dict[str, PackageWatcher] = {}
        self._listeners: List[PackageListener] = []
        self._lock = threading.Lock()
        self._dirty = False
        self._suspended = True
        self._started = False

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def watched_folders(self) -> List[str]:
        return list(self._watchers)

    def add_dirty_listener(self, listener: PackageListener) -> None:
        self._listeners.append(listener)

    def sync_packages(self, packages: Iterable) -> None:
        """Match the watchers to a fresh package list"""
        found = dict(self._watchers)

        for package in packages:
            if not isinstance(package, LocalExtensionPackageMetadata):
                continue
            if package.watch_mode == WatchMode.NONE:
                continue

            key = _normalize(package.source_project_folder)
            existing = found.pop(key, None)
            if existing is not None:
                existing.update(package)
                continue

            watcher = self._watcher_factory(package)
            watcher.add_listener(self._on_change)
            self._watchers[key] = watcher
            if self._started:
                watcher.start()

        for key, unused in found.items():
            del self._watchers[key]
            unused.remove_listener(self._on_change)
            unused.close()

    def start(self) -> None:
        with self._lock:
            self._suspended = False
            self._started = True
            for watcher in self._watchers.values():
                watcher.start()

    def suspend(self) -> None:
        with self._lock:
            self._suspended = True

    def reset(self) -> None:
        with self._lock:
            self._dirty = False
            for watcher in self._watchers.values():
                watcher.reset()

    def close(self) -> None:
        with self._lock:
            for watcher in self._watchers.values():
                watcher.remove_listener(self._on_change)
                watcher.close()
            self._watchers.clear()

    def _on_change(self, metadata: LocalExtensionPackageMetadata) -> None:
        if self._suspended or self._dirty:
            return

        with self._lock:
            if self._suspended or self._dirty:
                return
            self._dirty = True

        # Notify outside the lock
        for listener in list(self._listeners):
            listener(metadata)
