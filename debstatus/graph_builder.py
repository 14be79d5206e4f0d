"""Builds the deduplicated dependency graph from the resolver's output."""

import dataclasses
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import (DependencyEdge, DependencyKind, Graph, GraphNode, PackageId,
                     ResolvedPackage)
from .target import Platform
from .version_parser import parse_version

logger = logging.getLogger(__name__)

KIND_ORDER = {DependencyKind.NORMAL: 0, DependencyKind.BUILD: 1, DependencyKind.DEV: 2}


class PackageSpecError(ValueError):
    """A `name[:version]` package spec matched no package or several."""


@dataclass
class BuildOptions:
    """How the resolved graph is filtered before statuses are computed."""

    features: List[str] = field(default_factory=list)
    all_features: bool = False
    no_default_features: bool = False
    include_dev: bool = False
    platform: Optional[Platform] = None  # None matches every platform
    include: List[str] = field(default_factory=list)  # workspace members to keep as roots
    exclude: List[str] = field(default_factory=list)
    collapse_workspace: bool = False


class DependencyGraphBuilder:
    """
    Builds a Graph from resolved packages and edges in three steps:

    1. Root selection - workspace members, narrowed by include/exclude and
       optionally collapsed so members used by other members are not roots
    2. Feature unification - a fixed point over (PackageId, feature) pairs
       that decides which optional edges are live
    3. Construction - nodes created in DFS discovery order from the roots,
       back edges marked, everything unreachable dropped
    """

    def __init__(self, packages: Iterable[ResolvedPackage], edges: Iterable[DependencyEdge],
                 options: Optional[BuildOptions] = None):
        self.options = options or BuildOptions()
        self.packages: Dict[PackageId, ResolvedPackage] = {}
        for package in packages:
            self.packages.setdefault(package.package_id, package)

        self.edges: Dict[PackageId, List[DependencyEdge]] = defaultdict(list)
        skipped = 0
        for edge in edges:
            if edge.source not in self.packages or edge.target not in self.packages:
                logger.warning(f"Edge {edge.source} -> {edge.target} references an unknown package, skipping")
                continue
            if self._applies(edge):
                self.edges[edge.source].append(edge)
            else:
                skipped += 1
        for source in self.edges:
            self.edges[source].sort(key=lambda e: KIND_ORDER[e.kind])
        logger.debug(f"Filtered out {skipped} edges by kind or platform")

        # Feature unification state
        self.enabled: Set[Tuple[PackageId, str]] = set()
        self.activated: Set[Tuple[PackageId, str]] = set()  # optional deps switched on by alias
        self.pending: Dict[Tuple[PackageId, str], Set[str]] = defaultdict(set)  # features for a dep alias
        self.live: Set[int] = set()  # id() of live edges
        self.reachable: Set[PackageId] = set()
        self._queue: deque = deque()

    def _applies(self, edge: DependencyEdge) -> bool:
        if edge.kind is DependencyKind.DEV:
            if not self.options.include_dev or not self.packages[edge.source].is_workspace_member:
                return False
        platform = self.options.platform
        return platform is None or platform.matches(edge.platform)

    def build(self, root: Optional[PackageId] = None) -> Graph:
        """
        Build the graph for `root` (None for a virtual workspace).

        Returns:
            Graph whose nodes are in discovery order and whose back edges are marked
        """
        roots = self.select_roots(root)
        logger.info(f"Building graph from {len(roots)} roots over {len(self.packages)} packages")

        self.unify_features(roots)
        graph = self._construct(roots)
        graph.root = root if root in graph else None

        logger.info(f"Graph has {len(graph)} nodes, {sum(1 for _ in graph.edges())} edges "
                    f"and {sum(1 for e in graph.edges() if e.is_back_edge)} back edges")
        return graph

    def select_roots(self, root: Optional[PackageId] = None) -> List[PackageId]:
        """Workspace members to start from, after include/exclude/collapse."""
        roots = [pid for pid, package in self.packages.items() if package.is_workspace_member]
        if root is not None and root in self.packages and root not in roots:
            roots.insert(0, root)

        if self.options.include:
            roots = [pid for pid in roots if pid.name in self.options.include]
            if self.options.collapse_workspace:
                roots = self._collapse(roots)
        else:
            if self.options.collapse_workspace:
                roots = self._collapse(roots)
            if self.options.exclude:
                roots = [pid for pid in roots if pid.name not in self.options.exclude]
        return roots

    def _collapse(self, roots: List[PackageId]) -> List[PackageId]:
        """Drop roots reachable from another root."""
        covered: Set[PackageId] = set()
        for root in roots:
            seen = self._walk(root)
            covered.update(other for other in roots if other != root and other in seen)
        return [root for root in roots if root not in covered]

    def _walk(self, start: PackageId) -> Set[PackageId]:
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for edge in self.edges.get(current, []):
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen

    # Feature unification

    def unify_features(self, roots: List[PackageId]) -> None:
        """
        Compute the enabled (PackageId, feature) pairs and the live edges.

        A feature enables the entries of its feature table; an optional edge
        is live once its dependency is activated (`dep:x`, `x/feat`, or one of
        its `required_by_features`); a live edge enables its requested features
        and `default` on the target. Only nodes reachable through live edges
        take part.
        """
        for root in roots:
            self._reach(root)
            self._seed(root)

        while self._queue:
            package_id, feature = self._queue.popleft()
            if feature is not None:
                self._apply_feature(package_id, feature)
            self._scan_edges(package_id)

        logger.debug(f"Feature unification enabled {len(self.enabled)} features on "
                     f"{len(self.reachable)} packages")

    def _seed(self, root: PackageId) -> None:
        table = self.packages[root].features
        if self.options.all_features:
            for feature in table:
                self._enable(root, feature)
            for edge in self.edges.get(root, []):
                if edge.optional:
                    self.activated.add((root, edge.alias))
        elif not self.options.no_default_features and "default" in table:
            self._enable(root, "default")

        for requested in self.options.features:
            if "/" in requested:
                member, _, feature = requested.partition("/")
                if member == root.name:
                    self._enable_entry(root, feature)
            else:
                self._enable_entry(root, requested)

    def _reach(self, package_id: PackageId) -> None:
        if package_id not in self.reachable:
            self.reachable.add(package_id)
            self._queue.append((package_id, None))

    def _enable(self, package_id: PackageId, feature: str) -> None:
        key = (package_id, feature)
        if key not in self.enabled:
            self.enabled.add(key)
            self._queue.append(key)

    def _enable_entry(self, package_id: PackageId, entry: str) -> None:
        """Enable a feature-table entry: a feature or an implicit optional-dependency feature."""
        if entry in self.packages[package_id].features:
            self._enable(package_id, entry)
        else:
            self.activated.add((package_id, entry))
            self._queue.append((package_id, None))

    def _apply_feature(self, package_id: PackageId, feature: str) -> None:
        for entry in self.packages[package_id].features.get(feature, []):
            if entry.startswith("dep:"):
                self.activated.add((package_id, entry[4:]))
            elif "/" in entry:
                alias, _, dep_feature = entry.partition("/")
                if alias.endswith("?"):
                    alias = alias[:-1]
                else:
                    self.activated.add((package_id, alias))
                self.pending[(package_id, alias)].add(dep_feature)
            else:
                self._enable_entry(package_id, entry)

    def _is_live(self, edge: DependencyEdge) -> bool:
        if not edge.optional:
            return True
        if (edge.source, edge.alias) in self.activated:
            return True
        return any((edge.source, f) in self.enabled for f in edge.required_by_features)

    def _scan_edges(self, package_id: PackageId) -> None:
        for edge in self.edges.get(package_id, []):
            if id(edge) not in self.live:
                if not self._is_live(edge):
                    continue
                self.live.add(id(edge))
                self._reach(edge.target)
                for feature in edge.features:
                    self._enable_entry(edge.target, feature)
                if edge.uses_default_features and "default" in self.packages[edge.target].features:
                    self._enable(edge.target, "default")
            for feature in self.pending.get((package_id, edge.alias), ()):
                self._enable_entry(edge.target, feature)

    # Construction

    def _construct(self, roots: List[PackageId]) -> Graph:
        graph = Graph(roots=list(roots))
        on_stack: Set[PackageId] = set()
        features: Dict[PackageId, Set[str]] = defaultdict(set)
        for package_id, feature in self.enabled:
            features[package_id].add(feature)

        def add_node(package_id: PackageId) -> GraphNode:
            package = self.packages[package_id]
            node = GraphNode(
                package_id=package_id,
                enabled_features=set(features.get(package_id, ())),
                is_workspace_member=package.is_workspace_member,
                license=package.license,
                repository=package.repository,
                manifest_path=package.manifest_path,
            )
            graph.nodes[package_id] = node
            return node

        for root in roots:
            if root in graph:
                continue
            add_node(root)
            on_stack.add(root)
            stack = [(root, iter(self.edges.get(root, [])))]
            while stack:
                current, pending = stack[-1]
                edge = next(pending, None)
                if edge is None:
                    stack.pop()
                    on_stack.discard(current)
                    continue
                if id(edge) not in self.live:
                    continue

                kept = dataclasses.replace(edge, is_back_edge=edge.target in on_stack)
                graph.nodes[current].add_edge(kept)
                if edge.target not in graph:
                    add_node(edge.target)
                    on_stack.add(edge.target)
                    stack.append((edge.target, iter(self.edges.get(edge.target, []))))
                graph.nodes[edge.target].incoming.append(kept)

        return graph


def build(resolved_packages: Iterable[ResolvedPackage], resolved_edges: Iterable[DependencyEdge],
          root: Optional[PackageId] = None, options: Optional[BuildOptions] = None) -> Graph:
    """
    Build the dependency graph for a resolved workspace.

    Args:
        resolved_packages: Packages reported by the resolver
        resolved_edges: Dependency edges reported by the resolver
        root: Package the resolver was run for, None for a virtual workspace
        options: Feature, platform and root selection options

    Returns:
        Graph with one node per PackageId in discovery order
    """
    return DependencyGraphBuilder(resolved_packages, resolved_edges, options).build(root)


def find_package(graph: Graph, spec: str) -> PackageId:
    """
    Find the single package matching a `name` or `name:version` spec.

    Raises:
        PackageSpecError: if no package or more than one package matches
        ParseError: if the version part is malformed
    """
    name, _, version_text = spec.partition(":")
    version = parse_version(version_text) if version_text else None

    candidates = [
        pid for pid in graph.nodes
        if pid.name == name and (version is None or pid.version == version)
    ]
    if not candidates:
        raise PackageSpecError(f"no crates found for package `{spec}`")
    if len(candidates) > 1:
        specs = ", ".join(f"{pid.name}:{pid.version}" for pid in candidates)
        raise PackageSpecError(f"multiple crates found for package `{spec}`: {specs}")
    return candidates[0]
