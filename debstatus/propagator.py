"""Computes per-node blocking status over the dependency graph."""

import logging
from collections import deque
from typing import Dict, List, Optional, Tuple

from .models import (BlockingReason, Graph, InArchive, LookupFailed, Missing, NodeStatus,
                     PackageId)

logger = logging.getLogger(__name__)

StatusMap = Dict[PackageId, NodeStatus]


class StatusPropagator:
    """
    Aggregates archive statuses up the graph.

    Nodes are grouped into strongly connected components over hard edges and
    visited dependencies-first. Every member of a cycle shares the cycle's
    blocking state, so a cycle never hides a blocking dependency and never
    creates one by itself.
    """

    def __init__(self, graph: Graph, oracle):
        self.graph = graph
        self.oracle = oracle
        self.order = {pid: i for i, pid in enumerate(graph.nodes)}

    def own_status(self, package_id: PackageId):
        if not package_id.is_registry:
            return Missing()
        return self.oracle.lookup_package(package_id)

    def own_blocking(self, package_id: PackageId, status) -> Tuple[bool, BlockingReason]:
        """Whether a node blocks regardless of its dependencies, and why."""
        if self.graph.node(package_id).is_workspace_member:
            return False, BlockingReason.NONE
        if not package_id.is_registry:
            return True, BlockingReason.UNREGISTERED_SOURCE
        if isinstance(status, LookupFailed):
            return True, BlockingReason.LOOKUP_FAILED
        if isinstance(status, InArchive):
            return False, BlockingReason.NONE
        return True, BlockingReason.OWN_STATUS

    def hard_children(self, package_id: PackageId) -> List[PackageId]:
        return [e.target for e in self.graph.node(package_id).outgoing if e.is_hard]

    def components(self) -> List[List[PackageId]]:
        """Strongly connected components over hard edges, dependencies first (Tarjan)."""
        index: Dict[PackageId, int] = {}
        low: Dict[PackageId, int] = {}
        stack: List[PackageId] = []
        on_stack = set()
        result: List[List[PackageId]] = []

        def visit(package_id: PackageId) -> None:
            index[package_id] = low[package_id] = len(index)
            stack.append(package_id)
            on_stack.add(package_id)

        for start in self.graph.nodes:
            if start in index:
                continue
            visit(start)
            work = [(start, iter(self.hard_children(start)))]
            while work:
                current, children = work[-1]
                child = next(children, None)
                if child is not None:
                    if child not in index:
                        visit(child)
                        work.append((child, iter(self.hard_children(child))))
                    elif child in on_stack:
                        low[current] = min(low[current], index[child])
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[current])
                if low[current] == index[current]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == current:
                            break
                    component.sort(key=self.order.__getitem__)
                    result.append(component)
        return result

    def compute(self) -> StatusMap:
        statuses: StatusMap = {}
        components = self.components()
        cycles = sum(1 for c in components if len(c) > 1)
        if cycles:
            logger.debug(f"Found {cycles} dependency cycles over hard edges")

        for component in components:
            self._resolve_component(component, statuses)

        ordered = {pid: statuses[pid] for pid in self.graph.nodes}
        blocking = sum(1 for s in ordered.values() if s.blocking)
        logger.info(f"{blocking} of {len(ordered)} packages are blocking")
        return ordered

    def _resolve_component(self, component: List[PackageId], statuses: StatusMap) -> None:
        members = set(component)
        own = {}
        external: Dict[PackageId, Optional[PackageId]] = {}
        for pid in component:
            status = self.own_status(pid)
            own[pid] = (status,) + self.own_blocking(pid, status)
            external[pid] = next(
                (child for child in self.hard_children(pid)
                 if child not in members and statuses[child].blocking),
                None,
            )

        # distance to the nearest cause inside the component, for blocked_by
        distance: Dict[PackageId, int] = {}
        queue = deque()
        for pid in component:
            if own[pid][1] or external[pid] is not None:
                distance[pid] = 0
                queue.append(pid)
        while queue:
            current = queue.popleft()
            for edge in self.graph.node(current).incoming:
                if edge.is_hard and edge.source in members and edge.source not in distance:
                    distance[edge.source] = distance[current] + 1
                    queue.append(edge.source)

        blocking = bool(distance)
        for pid in component:
            status, own_blocks, reason = own[pid]
            if own_blocks:
                statuses[pid] = NodeStatus(status, True, reason)
            elif not blocking:
                statuses[pid] = NodeStatus(status, False)
            elif external[pid] is not None:
                statuses[pid] = NodeStatus(status, True, BlockingReason.DEPENDENCY, external[pid])
            else:
                next_hop = next(
                    child for child in self.hard_children(pid)
                    if distance.get(child) == distance[pid] - 1
                )
                statuses[pid] = NodeStatus(status, True, BlockingReason.DEPENDENCY, next_hop)


def compute_statuses(graph: Graph, oracle) -> StatusMap:
    """
    Compute the NodeStatus of every node in the graph.

    Args:
        graph: Graph produced by the graph builder
        oracle: ArchiveOracle (or any object with `lookup_package`); lookups
            not already cached are fetched synchronously

    Returns:
        Mapping of PackageId to NodeStatus in graph discovery order
    """
    return StatusPropagator(graph, oracle).compute()


def explain(statuses: StatusMap, package_id: PackageId) -> List[PackageId]:
    """
    Return the chain of packages explaining why `package_id` is blocking.

    The chain starts at `package_id` and ends at the package that blocks on
    its own status. Empty when the package is not blocking.
    """
    status = statuses.get(package_id)
    if status is None or not status.blocking:
        return []

    chain = [package_id]
    seen = {package_id}
    while status.blocked_by is not None and status.blocked_by not in seen:
        package_id = status.blocked_by
        chain.append(package_id)
        seen.add(package_id)
        status = statuses[package_id]
    return chain
