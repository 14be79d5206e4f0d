"""Version parsing and cargo requirement matching."""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from debian.debian_support import Version as DebianVersion
from semantic_version import Version


class ParseError(ValueError):
    """A version or version requirement string could not be parsed."""


def parse_version(text: str) -> Version:
    """Parse a full semantic version (`major.minor.patch[-pre][+build]`)."""
    try:
        return Version(text.strip())
    except ValueError as e:
        raise ParseError(f"invalid version `{text}`: {e}") from e


def strip_build(version: Version) -> Version:
    return Version(major=version.major, minor=version.minor, patch=version.patch,
                   prerelease=version.prerelease)


def _compare_pre(left: Tuple[str, ...], right: Tuple[str, ...]) -> int:
    """Compare two pre-release tags with semver precedence (empty sorts last)."""
    a = Version(major=0, minor=0, patch=0, prerelease=left)
    b = Version(major=0, minor=0, patch=0, prerelease=right)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


@dataclass(frozen=True)
class Comparator:
    """A single `op major[.minor[.patch]][-pre]` clause of a requirement."""

    op: str
    major: int
    minor: Optional[int] = None
    patch: Optional[int] = None
    pre: Tuple[str, ...] = field(default=())

    def __str__(self) -> str:
        text = str(self.major)
        for part in (self.minor, self.patch):
            if part is None:
                if self.op == "*":
                    text += ".*"
                break
            text += f".{part}"
        if self.pre:
            text += "-" + ".".join(self.pre)
        return text if self.op == "*" else f"{self.op}{text}"

    def matches(self, ver: Version) -> bool:
        if self.op in ("=", "*"):
            return self._exact(ver)
        if self.op == ">":
            return self._greater(ver)
        if self.op == ">=":
            return self._exact(ver) or self._greater(ver)
        if self.op == "<":
            return self._less(ver)
        if self.op == "<=":
            return self._exact(ver) or self._less(ver)
        if self.op == "~":
            return self._tilde(ver)
        return self._caret(ver)

    def allows_prerelease_of(self, ver: Version) -> bool:
        return (self.major == ver.major and self.minor == ver.minor
                and self.patch == ver.patch and bool(self.pre))

    def _exact(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return False
        return tuple(ver.prerelease) == self.pre

    def _greater(self, ver: Version) -> bool:
        if ver.major != self.major:
            return ver.major > self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor > self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch > self.patch
        return _compare_pre(tuple(ver.prerelease), self.pre) > 0

    def _less(self, ver: Version) -> bool:
        if ver.major != self.major:
            return ver.major < self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor < self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch < self.patch
        return _compare_pre(tuple(ver.prerelease), self.pre) < 0

    def _tilde(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return ver.patch > self.patch
        return _compare_pre(tuple(ver.prerelease), self.pre) >= 0

    def _caret(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is None:
            return True
        if self.patch is None:
            if self.major > 0:
                return ver.minor >= self.minor
            return ver.minor == self.minor
        if self.major > 0:
            if ver.minor != self.minor:
                return ver.minor > self.minor
            if ver.patch != self.patch:
                return ver.patch > self.patch
        elif self.minor > 0:
            if ver.minor != self.minor:
                return False
            if ver.patch != self.patch:
                return ver.patch > self.patch
        elif ver.minor != self.minor or ver.patch != self.patch:
            return False
        return _compare_pre(tuple(ver.prerelease), self.pre) >= 0


class VersionReq:
    """A cargo version requirement: comma-separated comparators, all must match."""

    OP_PATTERN = re.compile(r'^(>=|<=|=|>|<|~|\^)?\s*(.*)$')
    VERSION_PATTERN = re.compile(
        r'^(\d+|[*xX])'                      # major
        r'(?:\.(\d+|[*xX]))?'                # minor
        r'(?:\.(\d+|[*xX]))?'                # patch
        r'(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'  # pre-release
        r'(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$'  # build metadata, ignored
    )
    WILDCARDS = ("*", "x", "X")

    def __init__(self, comparators: List[Comparator], text: str = ""):
        self.comparators = comparators
        self.text = text

    @classmethod
    def parse(cls, text: str) -> "VersionReq":
        """
        Parse a requirement string such as `^1.2`, `>=0.3, <0.5` or `1.*`.

        Raises:
            ParseError: if any clause is malformed
        """
        if text is None or not text.strip():
            raise ParseError("empty version requirement")

        comparators: List[Comparator] = []
        for clause in text.split(","):
            comparator = cls._parse_clause(clause.strip(), text)
            if comparator is not None:
                comparators.append(comparator)
        return cls(comparators, text.strip())

    @classmethod
    def _parse_clause(cls, clause: str, text: str) -> Optional[Comparator]:
        if not clause:
            raise ParseError(f"empty comparator in requirement `{text}`")

        op, rest = cls.OP_PATTERN.match(clause).groups()
        match = cls.VERSION_PATTERN.match(rest.strip())
        if not match:
            raise ParseError(f"invalid version requirement `{text}`")

        raw_major, raw_minor, raw_patch, pre, _build = match.groups()

        if raw_major in cls.WILDCARDS:
            if op or raw_minor is not None or raw_patch is not None or pre:
                raise ParseError(f"invalid wildcard in requirement `{text}`")
            return None  # `*` matches every release

        parts: List[Optional[int]] = [int(raw_major)]
        wildcard = False
        for raw in (raw_minor, raw_patch):
            if raw is None:
                parts.append(None)
            elif raw in cls.WILDCARDS:
                wildcard = True
                parts.append(None)
            elif wildcard:
                raise ParseError(f"unexpected version after wildcard in `{text}`")
            else:
                parts.append(int(raw))

        if pre:
            if parts[1] is None or parts[2] is None:
                raise ParseError(f"pre-release requires a full version in `{text}`")
            parse_version(f"{parts[0]}.{parts[1]}.{parts[2]}-{pre}")

        if wildcard:
            if op not in (None, "=", "^", "~"):
                raise ParseError(f"wildcard not allowed with `{op}` in `{text}`")
            op = "*" if op in (None, "=") else op
        elif op is None:
            op = "^"

        return Comparator(op=op, major=parts[0], minor=parts[1], patch=parts[2],
                          pre=tuple(pre.split(".")) if pre else ())

    def matches(self, candidate: Union[str, Version]) -> bool:
        """Whether `candidate` satisfies every comparator of this requirement."""
        if isinstance(candidate, str):
            candidate = parse_version(candidate)
        ver = strip_build(candidate)

        if not all(c.matches(ver) for c in self.comparators):
            return False
        if not ver.prerelease:
            return True
        # pre-releases only match a comparator naming the same major.minor.patch
        return any(c.allows_prerelease_of(ver) for c in self.comparators)

    def __str__(self) -> str:
        if not self.comparators:
            return "*"
        return ", ".join(str(c) for c in self.comparators)

    def __repr__(self) -> str:
        return f"VersionReq({str(self)!r})"


def matches(requirement: Union[str, VersionReq], candidate: Union[str, Version]) -> bool:
    """Return True if `candidate` satisfies the cargo `requirement`."""
    if isinstance(requirement, str):
        requirement = VersionReq.parse(requirement)
    return requirement.matches(candidate)


def is_compatible(a: Union[str, Version], b: Union[str, Version]) -> bool:
    """Whether two versions share the same caret compatibility class."""
    if isinstance(a, str):
        a = parse_version(a)
    if isinstance(b, str):
        b = parse_version(b)

    if a.major > 0 or b.major > 0:
        return a.major == b.major
    if a.minor > 0 or b.minor > 0:
        return a.minor == b.minor
    return a.patch == b.patch


@dataclass
class DebianVersionInfo:
    """
    Parsed Debian archive version.

    Attributes:
        upstream_version: Upstream part as a semver string (`~` turned into `-`)
        semver: Parsed semantic version of the upstream part
        original_string: The Debian version string as-is
        epoch: Debian epoch, if any
        revision: Debian revision, if any
    """
    upstream_version: str
    semver: Version
    original_string: str
    epoch: Optional[str] = None
    revision: Optional[str] = None


class VersionParser:
    """Parser for Debian archive versions of packaged Rust crates."""

    @classmethod
    def parse_debian(cls, version: str) -> DebianVersionInfo:
        """
        Parse a Debian version string like `1:0.4.5+dfsg-2` or `1.0.0~rc1-1`.

        Args:
            version: The version string reported by the archive

        Returns:
            DebianVersionInfo with the upstream version as a semantic version

        Raises:
            ParseError: if the version is not a valid Debian version or its
                upstream part cannot be read as a semantic version
        """
        try:
            debversion = DebianVersion(version)
        except ValueError as e:
            raise ParseError(f"invalid Debian version `{version}`: {e}") from e

        upstream = debversion.upstream_version
        # Debian sorts `~` before the release; semver uses a `-` pre-release tag
        if "~" in upstream:
            head, _, tail = upstream.partition("~")
            separator = "." if "-" in head else "-"
            upstream = f"{head}{separator}{tail.replace('~', '.')}"

        try:
            semver = Version(upstream)
        except ValueError:
            try:
                semver = Version.coerce(upstream)
            except ValueError as e:
                raise ParseError(f"cannot read `{version}` as a semantic version") from e

        return DebianVersionInfo(
            upstream_version=str(strip_build(semver)),
            semver=strip_build(semver),
            original_string=version,
            epoch=debversion.epoch,
            revision=debversion.debian_revision,
        )

    @classmethod
    def get_upstream_version(cls, version: str) -> str:
        """Return the upstream semantic version of a Debian version string."""
        return cls.parse_debian(version).upstream_version
