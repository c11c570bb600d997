"""
Isolated loading of extension entry points

Every load gets its own ``ExtensionLoadContext``: a private module table
and a private ``__import__``. Imports made by extension code resolve first
against the library files of the installed packages (matched by module
file name, first package wins) and otherwise fall back to the host's normal
import system. Extension modules are registered in ``sys.modules`` only
under names qualified by a context-unique prefix (``_exthost_ctx<n>.<name>``),
so they can neither clash with nor leak into the host's own modules, and
releasing the context unregisters and drops them deterministically.
"""

import builtins
import gc
import importlib.util
import inspect
import itertools
import logging
import sys
import typing
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Dict, Generic, List, Optional, Tuple, Type, TypeVar

from extension_host.core.extensions.entry_point import Collaborators
from extension_host.core.extensions.exceptions import (
    AmbiguousEntryPointError,
    BadConstructorError,
    EntryPointConstructionError,
    EntryPointNotFoundError,
    ExtensionError,
    ExtensionLoadError,
)
from extension_host.core.extensions.models import InstalledExtensionPackages, PackageMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTRY_POINT_ATTRIBUTE = "__extension_entry_point__"

_context_ids = itertools.count(1)


class ExtensionLoadContext:
    """A private module namespace over the installed packages' library files"""

    def __init__(self, packages: InstalledExtensionPackages):
        self._modules: Dict[str, ModuleType] = {}
        self._top_level: Dict[str, Tuple[Path, bool]] = {}
        self._builtins = dict(vars(builtins))
        self._builtins["__import__"] = self._import
        self._released = False
        self._prefix = f"_exthost_ctx{next(_context_ids)}"
        self._roots = {self._prefix}
        self._registered: List[str] = []

        for package in packages.packages:
            self._index_package(package)

    def _index_package(self, package: PackageMetadata) -> None:
        files = set(package.library_files)
        for relative in package.library_files:
            path = Path(relative)
            if path.name == "__init__.py":
                parent = path.parent
                if (parent.parent / "__init__.py").as_posix() in files or not parent.name:
                    continue
                self._top_level.setdefault(parent.name, (package.get_path(*parent.parts), True))
            elif path.suffix == ".py":
                if (path.parent / "__init__.py").as_posix() in files:
                    continue
                self._top_level.setdefault(path.stem, (package.get_path(*path.parts), False))

    @property
    def released(self) -> bool:
        return self._released

    @property
    def module_names(self) -> List[str]:
        return list(self._modules)

    def provides(self, name: str) -> bool:
        return name.partition(".")[0] in self._top_level

    def _logical(self, name: str) -> str:
        head, _, rest = name.partition(".")
        return rest if head in self._roots and rest else name

    def _exec(self, name: str, location: Path, is_package: bool, key: Optional[str] = None) -> ModuleType:
        file_path = location / "__init__.py" if is_package else location
        root = self._prefix
        if key is not None:
            root = f"{self._prefix}s{len(self._roots)}"
            self._roots.add(root)
        qualified = f"{root}.{name}"
        spec = importlib.util.spec_from_file_location(
            qualified,
            file_path,
            submodule_search_locations=[str(location)] if is_package else None,
        )
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load extension module {name} from {file_path}", name=name)

        module = importlib.util.module_from_spec(spec)
        module.__builtins__ = self._builtins
        key = key or name
        self._modules[key] = module
        sys.modules[qualified] = module
        self._registered.append(qualified)
        try:
            spec.loader.exec_module(module)
        except BaseException:
            self._modules.pop(key, None)
            sys.modules.pop(qualified, None)
            self._registered.remove(qualified)
            raise
        return module

    def _load_submodule(self, parent: ModuleType, name: str) -> Optional[ModuleType]:
        child = name.rpartition(".")[2]
        for directory in getattr(parent, "__path__", None) or []:
            base = Path(directory)
            if (base / child / "__init__.py").is_file():
                module = self._exec(name, base / child, True)
            elif (base / f"{child}.py").is_file():
                module = self._exec(name, base / f"{child}.py", False)
            else:
                continue
            setattr(parent, child, module)
            return module
        return None

    def import_module(self, name: str) -> ModuleType:
        """Import a dotted module name from the installed packages"""
        if self._released:
            raise ExtensionError("Extension load context has been released")

        if name in self._modules:
            return self._modules[name]

        head, _, _ = name.rpartition(".")
        if not head:
            if name not in self._top_level:
                raise ModuleNotFoundError(f"No extension module named {name!r}", name=name)
            location, is_package = self._top_level[name]
            return self._exec(name, location, is_package)

        parent = self.import_module(head)
        module = self._load_submodule(parent, name)
        if module is None:
            raise ModuleNotFoundError(f"No extension module named {name!r}", name=name)
        return module

    def load_file(self, path: Path) -> ModuleType:
        """Load an entry point module by path"""
        path = Path(path)
        is_package = path.name == "__init__.py"
        name = path.parent.name if is_package else path.stem
        location = path.parent if is_package else path

        indexed = self._top_level.get(name)
        if indexed is not None and indexed[0] == location:
            return self.import_module(name)

        # Shadowed by an earlier package; load under a private key
        key = f"{name}@{location}"
        if key in self._modules:
            return self._modules[key]
        return self._exec(name, location, is_package, key=key)

    def _import(self, name, globals=None, locals=None, fromlist=(), level=0):
        if level > 0:
            package = (globals or {}).get("__package__") or ""
            absolute = self._logical(importlib.util.resolve_name("." * level + name, package))
        else:
            absolute = name

        if not self.provides(absolute):
            return builtins.__import__(name, globals, locals, fromlist, level)

        module = self.import_module(absolute)

        if not fromlist:
            if level > 0:
                return module
            return self.import_module(absolute.partition(".")[0])

        for item in fromlist:
            if item == "*":
                for exported in getattr(module, "__all__", ()):
                    self._ensure_attribute(module, exported)
            else:
                self._ensure_attribute(module, item)
        return module

    def _ensure_attribute(self, module: ModuleType, item: str) -> None:
        if hasattr(module, item) or not hasattr(module, "__path__"):
            return
        self._load_submodule(module, f"{self._logical(module.__name__)}.{item}")

    def release(self) -> None:
        """Drop every module this context loaded"""
        if self._released:
            return
        self._released = True
        for qualified in self._registered:
            sys.modules.pop(qualified, None)
        self._registered.clear()
        for module in self._modules.values():
            module.__dict__.clear()
        self._modules.clear()
        self._top_level.clear()
        self._builtins.clear()
        gc.collect()


class LoadState(str, Enum):
    LOADED = "loaded"
    UNLOADING = "unloading"
    UNLOADED = "unloaded"


class LoadedExtensions(Generic[T]):
    """
    Entry point instances and the context that owns their modules

    Closing (or leaving the ``with`` block) closes every entry point, then
    releases the context.
    """

    def __init__(self, context: ExtensionLoadContext, packages: InstalledExtensionPackages):
        self.context = context
        self.packages = packages
        self.entry_points: List[T] = []
        self.state = LoadState.LOADED
        self._required = {p.id.lower() for p in packages.top_level_packages()}

    def _fail(self, package: PackageMetadata, error: ExtensionLoadError) -> None:
        if package.id.lower() in self._required:
            raise error
        logger.debug(f"Skipping dependency package {package.id}: {error}")

    def load_entry_points(self, entry_point_type: Type[T], collaborators: Collaborators) -> None:
        for package in self.packages.packages:
            if package.entry_point is None:
                self._fail(package, EntryPointNotFoundError(
                    f"Entry point for package {package.id} expected but not found"
                ))
                continue

            try:
                module = self.context.load_file(package.get_path(package.entry_point))
            except Exception as e:
                error = ExtensionLoadError(
                    f"Failed to load entry module {package.entry_point} of package {package.id}: {e}"
                )
                error.__cause__ = e
                self._fail(package, error)
                continue

            try:
                entry_type = find_entry_point_type(module, entry_point_type)
            except ExtensionLoadError as e:
                self._fail(package, e)
                continue

            if entry_type is None:
                self._fail(package, EntryPointNotFoundError(
                    f"Package {package.id} does not export a concrete {entry_point_type.__name__}"
                ))
                continue

            try:
                instance = construct_entry_point(entry_type, package, collaborators)
            except ExtensionLoadError as e:
                self._fail(package, e)
                continue

            logger.info(
                f"Loaded extension {package.id} ({entry_type.__name__})",
                extra={"package_id": package.id, "package_version": package.version},
            )
            self.entry_points.append(instance)

    def is_package_loaded(self, package_id: str) -> bool:
        return self.packages.find(package_id) is not None

    def get_package_path(self, package_id: str, *parts: str) -> Path:
        package = self.packages.find(package_id)
        if package is None:
            raise ExtensionError(f"Package {package_id} is not loaded")
        return package.get_path(*parts)

    def _close_entry_points(self) -> Optional[Exception]:
        first_error = None
        for entry_point in self.entry_points:
            close = getattr(entry_point, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                logger.error(f"Error closing extension {type(entry_point).__name__}: {e}")
                first_error = first_error or e

        self.entry_points.clear()
        return first_error

    def close(self) -> None:
        if self.state != LoadState.LOADED:
            return
        self.state = LoadState.UNLOADING

        # Entry points must be unreachable before the context collects
        first_error = self._close_entry_points()
        self.context.release()
        self.state = LoadState.UNLOADED

        if first_error is not None:
            raise first_error

    def __enter__(self) -> "LoadedExtensions[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def find_entry_point_type(module: ModuleType, entry_point_type: type) -> Optional[type]:
    """
    The single concrete implementation of entry_point_type a module exports

    Raises:
        ExtensionLoadError: If the declared entry point is unusable
        AmbiguousEntryPointError: If more than one candidate is exported
    """
    declared = getattr(module, ENTRY_POINT_ATTRIBUTE, None)
    if declared is not None:
        if not (isinstance(declared, type) and issubclass(declared, entry_point_type)):
            raise ExtensionLoadError(
                f"{ENTRY_POINT_ATTRIBUTE} in {module.__name__} is not a {entry_point_type.__name__}"
            )
        if inspect.isabstract(declared):
            raise ExtensionLoadError(f"Declared entry point {declared.__name__} is abstract")
        return declared

    exported = getattr(module, "__all__", None)
    if exported is not None:
        names = list(exported)
        own_only = False
    else:
        names = [n for n in vars(module) if not n.startswith("_")]
        own_only = True

    candidates = []
    for name in names:
        value = getattr(module, name, None)
        if not isinstance(value, type) or value is entry_point_type:
            continue
        if own_only and value.__module__ != module.__name__:
            continue
        if issubclass(value, entry_point_type) and not inspect.isabstract(value) and value not in candidates:
            candidates.append(value)

    if len(candidates) > 1:
        raise AmbiguousEntryPointError(
            f"Module {module.__name__} exports more than one {entry_point_type.__name__}: "
            f"{', '.join(c.__name__ for c in candidates)}"
        )
    return candidates[0] if candidates else None


def construct_entry_point(entry_type: type, package: PackageMetadata, collaborators: Collaborators):
    """
    Instantiate an entry point type with collaborators for its parameters

    Raises:
        BadConstructorError: If a parameter is not a supported collaborator
        EntryPointConstructionError: If the constructor raises
    """
    init = entry_type.__init__
    hints = {}
    if init is not object.__init__:
        try:
            hints = typing.get_type_hints(init)
        except Exception as e:
            raise BadConstructorError(
                f"Cannot inspect constructor of {entry_type.__qualname__} in package {package.id}: {e}"
            ) from e

    kwargs = {}
    for name, parameter in inspect.signature(entry_type).parameters.items():
        if parameter.kind in (parameter.VAR_POSITIONAL, parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(name)
        if collaborators.supports(annotation):
            kwargs[name] = collaborators.provide(annotation, package)
        elif parameter.default is parameter.empty:
            raise BadConstructorError(
                f"Entry point {entry_type.__qualname__} in package {package.id} asks for "
                f"unsupported constructor parameter '{name}'"
            )

    try:
        return entry_type(**kwargs)
    except Exception as e:
        raise EntryPointConstructionError(
            f"Failed to instantiate entry point type {entry_type.__qualname__} in package {package.id}"
        ) from e


def load_extensions(
    packages: InstalledExtensionPackages,
    entry_point_type: Type[T],
    collaborators: Collaborators
) -> LoadedExtensions[T]:
    """Load every package's entry point into a fresh context"""
    loaded: LoadedExtensions[T] = LoadedExtensions(ExtensionLoadContext(packages), packages)
    try:
        loaded.load_entry_points(entry_point_type, collaborators)
    except BaseException:
        loaded.close()
        raise
    return loaded
