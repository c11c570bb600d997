"""Extension entry point base class and the collaborators handed to it"""

import logging
import types
import typing
from abc import ABC
from typing import Any, Callable, Dict, Optional

from extension_host.core.extensions.host import HostEnvironment
from extension_host.core.extensions.models import PackageMetadata


class BaseExtensionEntryPoint(ABC):
    """
    Base class for the capability an extension package implements

    Subclasses are constructed by the loader. Constructor parameters may only
    ask for collaborators, by annotation:

        class MyExtension(BaseExtensionEntryPoint):
            def __init__(self, logger: logging.Logger, environment: HostEnvironment):
                super().__init__(logger)
                self.environment = environment

    ``close`` is called before the extension's modules are released.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(f"extensions.{type(self).__name__}")

    def close(self) -> None:
        pass


class Collaborators:
    """
    The objects an entry point constructor may ask for

    Only whitelisted types are available: a per-package ``logging.Logger``,
    the ``HostEnvironment`` and the package's own ``PackageMetadata``. Hosts
    may register more with ``register``.
    """

    def __init__(self, environment: HostEnvironment, logger_prefix: str = "extensions"):
        self.environment = environment
        self.logger_prefix = logger_prefix
        self._factories: Dict[type, Callable[[PackageMetadata], Any]] = {
            logging.Logger: self._logger_for,
            HostEnvironment: lambda package: self.environment,
            PackageMetadata: lambda package: package,
        }

    def _logger_for(self, package: PackageMetadata) -> logging.Logger:
        return logging.getLogger(f"{self.logger_prefix}.{package.id}")

    def register(self, collaborator_type: type, factory: Callable[[PackageMetadata], Any]) -> None:
        self._factories[collaborator_type] = factory

    def supports(self, annotation: Any) -> bool:
        return self._match(annotation) is not None

    def _match(self, annotation: Any) -> Optional[type]:
        if typing.get_origin(annotation) in (typing.Union, types.UnionType):
            members = [a for a in typing.get_args(annotation) if a is not type(None)]
            if len(members) != 1:
                return None
            annotation = members[0]
        if not isinstance(annotation, type) or annotation is object:
            return None
        for collaborator_type in self._factories:
            if issubclass(collaborator_type, annotation):
                return collaborator_type
        return None

    def provide(self, annotation: Any, package: PackageMetadata) -> Any:
        collaborator_type = self._match(annotation)
        if collaborator_type is None:
            raise KeyError(annotation)
        return self._factories[collaborator_type](package)
