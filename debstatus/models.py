"""Core data models for debstatus."""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from semantic_version import Version


class SourceKind(Enum):
    """Where a resolved package comes from."""

    REGISTRY = "registry"
    GIT = "git"
    PATH = "path"


class DependencyKind(Enum):
    """Cargo dependency kinds, in rendering order."""

    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"


@dataclass(frozen=True)
class PackageId:
    """Identifies one resolved package instance (name, version, source)."""

    name: str
    version: Version
    source: SourceKind = SourceKind.REGISTRY
    source_detail: Optional[str] = field(default=None, compare=False)  # git url or path, display only

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.name, str(self.version), self.source.value)

    @property
    def full_name(self) -> str:
        """Return the package in cargo's `name vX.Y.Z` display format."""
        return f"{self.name} v{self.version}"

    @property
    def is_registry(self) -> bool:
        return self.source is SourceKind.REGISTRY

    def __str__(self) -> str:
        return self.full_name

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PackageId):
            return False
        return self.key == other.key


@dataclass
class DependencyEdge:
    """One dependency requirement between two resolved packages.

    Several edges may connect the same pair of packages, one per kind and
    platform combination; they are never merged.
    """

    source: PackageId
    target: PackageId
    requirement: str = "*"
    kind: DependencyKind = DependencyKind.NORMAL
    optional: bool = False
    platform: Optional[str] = None  # cfg(...) expression or target triple
    required_by_features: FrozenSet[str] = frozenset()  # features of `source` that enable this dep
    features: Tuple[str, ...] = ()  # features requested on `target`
    uses_default_features: bool = True
    dep_name: Optional[str] = None  # name in the manifest, after `package = ...` renames
    is_back_edge: bool = False  # closes a cycle, set by the graph builder

    @property
    def alias(self) -> str:
        return self.dep_name or self.target.name

    @property
    def is_hard(self) -> bool:
        """Whether the target must be packaged for the source to build."""
        return self.kind is not DependencyKind.DEV and not self.optional


@dataclass(eq=False)
class GraphNode:
    """A node in the dependency graph (not a tree - nodes are shared)."""

    package_id: PackageId
    enabled_features: Set[str] = field(default_factory=set)
    is_workspace_member: bool = False
    outgoing: List[DependencyEdge] = field(default_factory=list)
    incoming: List[DependencyEdge] = field(default_factory=list)
    license: Optional[str] = None
    repository: Optional[str] = None
    manifest_path: Optional[str] = None

    @property
    def name(self) -> str:
        return self.package_id.name

    @property
    def version(self) -> Version:
        return self.package_id.version

    def add_edge(self, edge: DependencyEdge) -> None:
        self.outgoing.append(edge)


@dataclass
class Graph:
    """Arena of nodes keyed by PackageId, kept in discovery order.

    `roots` are the workspace members the graph was pruned to; `root` is the
    package the resolver was run for, None for a virtual workspace.
    """

    nodes: Dict[PackageId, GraphNode] = field(default_factory=dict)
    roots: List[PackageId] = field(default_factory=list)
    root: Optional[PackageId] = None

    def __contains__(self, package_id: PackageId) -> bool:
        return package_id in self.nodes

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, package_id: PackageId) -> GraphNode:
        return self.nodes[package_id]

    def edges(self) -> Iterator[DependencyEdge]:
        for node in self.nodes.values():
            yield from node.outgoing


# Archive status variants

@dataclass(frozen=True)
class InArchive:
    """A compatible (or newer) version is in the stable suite."""

    version: str
    newer: bool = False  # archive version is newer and semver-incompatible

    label = "in_archive"


@dataclass(frozen=True)
class InNewQueue:
    """A matching version waits in the NEW queue."""

    version: str
    age: Optional[timedelta] = None

    label = "in_new_queue"


@dataclass(frozen=True)
class Missing:
    """No version of the package is in the archive or the NEW queue."""

    label = "missing"


@dataclass(frozen=True)
class OutdatedInArchive:
    """The stable suite only has older, incompatible versions."""

    archive_version: str
    needed_version: str

    label = "outdated"


@dataclass(frozen=True)
class LookupFailed:
    """The archive could not be queried for this package."""

    reason: str

    label = "lookup_failed"


ArchiveStatus = (InArchive, InNewQueue, Missing, OutdatedInArchive, LookupFailed)


class BlockingReason(Enum):
    NONE = "none"
    OWN_STATUS = "own-status"
    LOOKUP_FAILED = "lookup-failed"
    UNREGISTERED_SOURCE = "unregistered-source"
    DEPENDENCY = "dependency"


@dataclass(frozen=True)
class NodeStatus:
    """Own archive status of a node plus its aggregated blocking state."""

    archive_status: object
    blocking: bool
    reason: BlockingReason = BlockingReason.NONE
    blocked_by: Optional[PackageId] = None  # next hop of the "why is this blocking" chain

    @property
    def is_packaged(self) -> bool:
        return isinstance(self.archive_status, InArchive)


@dataclass
class ResolvedPackage:
    """A package as reported by the dependency resolver."""

    package_id: PackageId
    features: Dict[str, List[str]] = field(default_factory=dict)  # feature table from the manifest
    is_workspace_member: bool = False
    license: Optional[str] = None
    repository: Optional[str] = None
    manifest_path: Optional[str] = None
