"""Composite resolution over local and registry resolvers"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from extension_host.core.extensions.exceptions import AggregateExtensionError, ExtensionError
from extension_host.core.extensions.models import (
    ExtensionSpec,
    InstalledExtensionPackages,
    LocalExtensionSpec,
    PackageDependency,
)
from extension_host.core.extensions.package_sets import ensure_valid
from extension_host.core.utils.cancel import CancelSignal, raise_if_cancelled

logger = logging.getLogger(__name__)


class ExtensionResolveContext:
    """
    What to resolve, shared by every resolver in a composite

    Resolvers that discover extra registry dependencies (local project
    builds) append them to ``additional_packages_required`` for the
    resolvers that run after them.
    """

    def __init__(
        self,
        extensions: Sequence[ExtensionSpec] = (),
        local_extensions: Sequence[LocalExtensionSpec] = ()
    ):
        self.extensions: List[ExtensionSpec] = list(extensions)
        self.local_extensions: List[LocalExtensionSpec] = list(local_extensions)
        self.additional_packages_required: List[PackageDependency] = []


class PackagesResolver(Protocol):
    async def resolve_packages(self, context: ExtensionResolveContext, cancel_event: Optional[CancelSignal] = None):
        ...


class CompositeInstallablePackageSet:
    """Valid iff every child is; installs children in reverse order"""

    def __init__(self, children: Sequence, extensions_directory: Optional[Path] = None):
        self.children = list(children)
        self.extensions_directory = extensions_directory

    @property
    def package_ids(self) -> List[str]:
        return [pid for child in self.children for pid in child.package_ids]

    @property
    def is_valid(self) -> bool:
        return all(child.is_valid for child in self.children)

    @property
    def error(self) -> Optional[ExtensionError]:
        errors = [child.error for child in self.children if not child.is_valid and child.error is not None]
        if not errors:
            if self.is_valid:
                return None
            return ExtensionError("One or more extension resolvers failed")
        if len(errors) == 1:
            return errors[0]
        return AggregateExtensionError(errors)

    async def install(self, cancel_event: Optional[CancelSignal] = None) -> InstalledExtensionPackages:
        ensure_valid(self)

        packages = []
        # The last resolver completes the dependency closure, so it installs first
        for child in reversed(self.children):
            raise_if_cancelled(cancel_event)
            installed = await child.install(cancel_event)
            packages.extend(installed.packages)

        result = InstalledExtensionPackages(packages)
        if self.extensions_directory is not None:
            await asyncio.to_thread(remove_unused_packages, self.extensions_directory, result)
        return result


def remove_unused_packages(extensions_directory: Path, installed: InstalledExtensionPackages) -> List[Path]:
    """Delete package folders in the extensions directory that nothing installed uses"""
    if not extensions_directory.is_dir():
        return []

    in_use = {Path(p.install_folder).resolve() for p in installed.packages}
    removed = []
    for entry in extensions_directory.iterdir():
        if not entry.is_dir() or entry.resolve() in in_use:
            continue
        logger.debug(f"Removing unused package folder {entry}")
        shutil.rmtree(entry, ignore_errors=True)
        removed.append(entry)
    return removed


class CompositeResolver:
    """Runs resolvers in order and combines their package sets"""

    def __init__(self, resolvers: Sequence[PackagesResolver], extensions_directory: Optional[Path] = None):
        self.resolvers = list(resolvers)
        self.extensions_directory = extensions_directory

    async def resolve_packages(
        self,
        context: ExtensionResolveContext,
        cancel_event: Optional[CancelSignal] = None
    ) -> CompositeInstallablePackageSet:
        children = []
        for resolver in self.resolvers:
            raise_if_cancelled(cancel_event)
            children.append(await resolver.resolve_packages(context, cancel_event))
        return CompositeInstallablePackageSet(children, self.extensions_directory)
