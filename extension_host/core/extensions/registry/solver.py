"""Version-consistency pass over a collected package pool"""

import logging
from typing import Dict, List, Mapping, Optional, Tuple

import semver

from extension_host.core.extensions.exceptions import ResolutionError
from extension_host.core.extensions.models import PackageDependency, PackageIdentity

logger = logging.getLogger(__name__)

# package id (lower) -> version -> direct dependencies
PackagePool = Mapping[str, Mapping[semver.Version, List[PackageDependency]]]


class DependencySolver:
    """
    Pick one version per package id so every recorded range holds

    Roots are pinned to the versions selected for them. Every other package
    prefers its lowest version that still satisfies all constraints placed
    on it, backtracking when a choice leads to a conflict.
    """

    def __init__(self, pool: PackagePool, names: Optional[Mapping[str, str]] = None):
        self.pool = pool
        self.names = dict(names or {})
        self._assigned: Dict[str, semver.Version] = {}
        self._conflict: Optional[str] = None

    def _name(self, key: str) -> str:
        return self.names.get(key, key)

    def _dependencies(self, key: str) -> List[PackageDependency]:
        return self.pool.get(key, {}).get(self._assigned[key], [])

    def _next_unassigned(self, roots: List[str]) -> Optional[str]:
        for key in roots:
            if key not in self._assigned:
                return key
        for key in list(self._assigned):
            for dep in self._dependencies(key):
                dep_key = dep.id.lower()
                if dep_key not in self._assigned:
                    return dep_key
        return None

    def _constraints(self, key: str) -> List[Tuple[str, PackageDependency]]:
        found = []
        for owner in self._assigned:
            for dep in self._dependencies(owner):
                if dep.id.lower() == key:
                    found.append((owner, dep))
        return found

    def _consistent(self, dependencies: List[PackageDependency]) -> bool:
        for dep in dependencies:
            chosen = self._assigned.get(dep.id.lower())
            if chosen is not None and dep.version_range is not None:
                if not dep.version_range.satisfies(chosen):
                    return False
        return True

    def _search(self, roots: List[str], pins: Dict[str, semver.Version]) -> bool:
        key = self._next_unassigned(roots)
        if key is None:
            return True

        available = self.pool.get(key)
        if not available:
            raise ResolutionError(f"Unable to find package '{self._name(key)}' in the available package pool")

        candidates = [pins[key]] if key in pins else sorted(available)
        constraints = self._constraints(key)

        for version in candidates:
            if version not in available:
                continue
            if any(dep.version_range is not None and not dep.version_range.satisfies(version)
                   for _, dep in constraints):
                continue
            if not self._consistent(available[version]):
                continue

            self._assigned[key] = version
            if self._search(roots, pins):
                return True
            del self._assigned[key]

        # Keep the innermost conflict; outer frames only unwind from it
        if self._conflict is not None:
            return False
        required = ", ".join(
            f"{self._name(owner)} {self._assigned[owner]} requires {dep.version or '*'}"
            for owner, dep in constraints
        )
        self._conflict = (
            f"No version of '{self._name(key)}' satisfies all constraints"
            + (f" ({required})" if required else "")
        )
        return False

    def solve(self, roots: Mapping[str, semver.Version]) -> List[PackageIdentity]:
        """
        Solve for the given root packages

        Raises:
            ResolutionError: If no consistent selection exists
        """
        pins = {key.lower(): version for key, version in roots.items()}
        root_keys = list(pins)
        self._assigned = {}
        self._conflict = None

        if not self._search(root_keys, pins):
            raise ResolutionError(self._conflict or "Unable to resolve a consistent package set")

        logger.debug(f"Solved {len(self._assigned)} package(s)")
        return [PackageIdentity(self._name(key), version) for key, version in self._assigned.items()]
