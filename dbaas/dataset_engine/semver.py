"""
Strict Semantic Versioning 2.0.0 parsing and precedence.

Invariants:
    - Only strings matching the semver.org regular expression parse
    - Build metadata never takes part in ordering
    - A pre-release version has lower precedence than its release
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering

from .errors import InvalidParamError

# Regular expression published on semver.org.
_SEMVER_RE = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


@total_ordering
@dataclass(frozen=True, eq=False)
class SemVer:
    """A parsed semantic version.

    Attributes:
        major: Major version
        minor: Minor version
        patch: Patch version
        prerelease: Dot-separated pre-release identifiers
        build: Build metadata, ignored for ordering
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str = field(default="", compare=False)

    @classmethod
    def parse(cls, value: str) -> SemVer:
        """Parse a strict SemVer2 string.

        Raises:
            InvalidParamError: If value is not a valid semantic version
        """
        m = _SEMVER_RE.fullmatch(value or "")
        if m is None:
            raise InvalidParamError(f"invalid semantic version '{value}'")
        pre = m.group("prerelease")
        return cls(
            major=int(m.group("major")),
            minor=int(m.group("minor")),
            patch=int(m.group("patch")),
            prerelease=tuple(pre.split(".")) if pre else (),
            build=m.group("build") or "",
        )

    def _key(self) -> tuple:
        return (self.major, self.minor, self.patch)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._key() == other._key() and self.prerelease == other.prerelease

    def __hash__(self) -> int:
        return hash((self._key(), self.prerelease))

    def __lt__(self, other: SemVer) -> bool:
        if self._key() != other._key():
            return self._key() < other._key()
        if self.prerelease == other.prerelease:
            return False
        if not self.prerelease:
            return False
        if not other.prerelease:
            return True
        return _compare_prerelease(self.prerelease, other.prerelease) < 0

    def __str__(self) -> str:
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            s += "-" + ".".join(self.prerelease)
        if self.build:
            s += "+" + self.build
        return s


def _compare_prerelease(a: tuple[str, ...], b: tuple[str, ...]) -> int:
    for x, y in zip(a, b):
        if x == y:
            continue
        x_num, y_num = x.isdigit(), y.isdigit()
        if x_num and y_num:
            return -1 if int(x) < int(y) else 1
        # Numeric identifiers sort before alphanumeric ones.
        if x_num:
            return -1
        if y_num:
            return 1
        return -1 if x < y else 1
    if len(a) == len(b):
        return 0
    return -1 if len(a) < len(b) else 1


def validate_next_version(latest: str, candidate: str) -> SemVer:
    """Check that candidate parses and is strictly greater than latest.

    An empty latest means the dataset has no version yet.

    Raises:
        InvalidParamError: If candidate is malformed or not greater
    """
    cur = SemVer.parse(candidate)
    if latest:
        pre = SemVer.parse(latest)
        if not pre < cur:
            raise InvalidParamError(
                f"version '{candidate}' must be greater than latest version '{latest}'"
            )
    return cur
