"""Stats command for summarizing packaging status."""

import logging
from collections import Counter
from typing import Dict

from ..models import Graph, NodeStatus, PackageId
from ..propagator import explain

logger = logging.getLogger(__name__)

STATUS_TITLES = [
    ("in_archive", "In Debian"),
    ("newer", "Newer in Debian"),
    ("in_new_queue", "In NEW queue"),
    ("outdated", "Outdated in Debian"),
    ("missing", "Missing"),
    ("lookup_failed", "Lookup failed"),
]


def compute_stats(graph: Graph, statuses: Dict[PackageId, NodeStatus]) -> Dict[str, int]:
    """Count packages per archive status; workspace members are counted separately."""
    counts: Counter = Counter()
    for node in graph:
        status = statuses[node.package_id]
        if node.is_workspace_member:
            counts["workspace"] += 1
            continue
        label = status.archive_status.label
        if label == "in_archive" and status.archive_status.newer:
            label = "newer"
        counts[label] += 1
        if status.blocking:
            counts["blocking"] += 1

    counts["total"] = len(graph)
    return dict(counts)


def show_stats(graph: Graph, statuses: Dict[PackageId, NodeStatus]) -> None:
    """Print packaging statistics and the blocking chain of every root.

    Args:
        graph: Annotated dependency graph
        statuses: Status map from the propagator
    """
    stats = compute_stats(graph, statuses)

    print("Packaging Status:")
    print(f"  Total Packages: {stats['total']}")
    print(f"  Workspace Members: {stats.get('workspace', 0)}")
    for key, title in STATUS_TITLES:
        print(f"  {title}: {stats.get(key, 0)}")
    print(f"  Blocking: {stats.get('blocking', 0)}")

    roots = [graph.root] if graph.root is not None else graph.roots
    for root in roots:
        chain = explain(statuses, root)
        if chain:
            print(f"\n{root} is blocked:")
            print("  " + " -> ".join(str(pid) for pid in chain))
        else:
            print(f"\n{root} is ready for Debian")
