"""
Semantic versions and interval version ranges

Versions are ``semver.Version`` values; minor and patch may be omitted
("1.2" parses as 1.2.0) and build metadata is discarded, so equality
follows semantic precedence.

Ranges use interval notation:

    1.0          1.0 <= x
    [1.0]        x == 1.0
    (1.0,)       1.0 <  x
    [1.0,2.0)    1.0 <= x < 2.0
    (,2.0]       x <= 2.0
    *            any version
"""

from typing import Iterable, Optional

import semver

from extension_host.core.extensions.exceptions import ConfigurationError


def parse_version(text: str) -> semver.Version:
    """
    Parse a semantic version

    Raises:
        ValueError: If the text is not a version
    """
    if text is None:
        raise ValueError("Version is empty")
    value = str(text).strip()
    if value.lower().startswith("v"):
        value = value[1:]
    if not value:
        raise ValueError("Version is empty")
    version = semver.Version.parse(value, optional_minor_and_patch=True)
    return version.replace(build=None)


def try_parse_version(text: Optional[str]) -> Optional[semver.Version]:
    try:
        return parse_version(text)
    except (TypeError, ValueError):
        return None


def is_prerelease(version: semver.Version) -> bool:
    return version.prerelease is not None


class VersionRange:
    """An interval over semantic versions with optional open ends"""

    __slots__ = ("min_version", "max_version", "include_min", "include_max", "_text")

    def __init__(
        self,
        min_version: Optional[semver.Version] = None,
        max_version: Optional[semver.Version] = None,
        include_min: bool = True,
        include_max: bool = False,
        text: Optional[str] = None
    ):
        self.min_version = min_version
        self.max_version = max_version
        self.include_min = include_min
        self.include_max = include_max
        self._text = text

    @classmethod
    def parse(cls, text: str) -> "VersionRange":
        """
        Parse interval notation

        Raises:
            ValueError: If the text is not a valid range
        """
        if text is None or not str(text).strip():
            raise ValueError("Version range is empty")
        value = str(text).strip()

        if value == "*":
            return cls(text=value)

        if value[0] not in "[(":
            return cls(min_version=parse_version(value), include_min=True, text=value)

        if value[-1] not in "])":
            raise ValueError(f"Unterminated version range: {value}")

        include_min = value[0] == "["
        include_max = value[-1] == "]"
        body = value[1:-1].strip()

        if "," not in body:
            # [1.0] exact; (1.0) is meaningless
            if not (include_min and include_max) or not body:
                raise ValueError(f"Invalid exact version range: {value}")
            exact = parse_version(body)
            return cls(exact, exact, True, True, text=value)

        parts = body.split(",")
        if len(parts) != 2:
            raise ValueError(f"Invalid version range: {value}")
        low, high = parts[0].strip(), parts[1].strip()
        if not low and not high:
            raise ValueError(f"Version range has no bounds: {value}")

        min_version = parse_version(low) if low else None
        max_version = parse_version(high) if high else None

        if min_version is not None and max_version is not None:
            if min_version > max_version:
                raise ValueError(f"Version range minimum exceeds maximum: {value}")
            if min_version == max_version and not (include_min and include_max):
                raise ValueError(f"Version range is empty: {value}")

        return cls(min_version, max_version, include_min, include_max, text=value)

    @classmethod
    def parse_config(cls, text: str, package_id: str = "") -> "VersionRange":
        """Parse a user-configured range; failures become ConfigurationError"""
        try:
            return cls.parse(text)
        except ValueError as e:
            owner = f" for package '{package_id}'" if package_id else ""
            raise ConfigurationError(f"Invalid version range '{text}'{owner}: {e}") from e

    @property
    def has_prerelease_bounds(self) -> bool:
        """True if either bound is itself a prerelease version"""
        return any(
            v is not None and is_prerelease(v)
            for v in (self.min_version, self.max_version)
        )

    def satisfies(self, version: semver.Version) -> bool:
        if self.min_version is not None:
            if self.include_min:
                if version < self.min_version:
                    return False
            elif version <= self.min_version:
                return False
        if self.max_version is not None:
            if self.include_max:
                if version > self.max_version:
                    return False
            elif version >= self.max_version:
                return False
        return True

    def find_best_match(self, versions: Iterable[semver.Version]) -> Optional[semver.Version]:
        """Lowest version that satisfies the range, or None"""
        best = None
        for version in versions:
            if self.satisfies(version) and (best is None or version < best):
                best = version
        return best

    def __str__(self) -> str:
        if self._text:
            return self._text
        if self.min_version is None and self.max_version is None:
            return "*"
        low = str(self.min_version) if self.min_version is not None else ""
        high = str(self.max_version) if self.max_version is not None else ""
        if self.min_version is not None and self.min_version == self.max_version:
            return f"[{low}]"
        if self.max_version is None and self.include_min:
            return low
        return f"{'[' if self.include_min else '('}{low}, {high}{']' if self.include_max else ')'}"

    def __repr__(self) -> str:
        return f"VersionRange({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionRange):
            return NotImplemented
        return (
            self.min_version == other.min_version
            and self.max_version == other.max_version
            and self.include_min == other.include_min
            and self.include_max == other.include_max
        )

    def __hash__(self) -> int:
        return hash((self.min_version, self.max_version, self.include_min, self.include_max))


ANY_VERSION = VersionRange(text="*")
