"""Tree rendering and output formatters."""

import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from packageurl import PackageURL
from rich.text import Text

from .graph_builder import KIND_ORDER, find_package
from .models import (BlockingReason, DependencyEdge, DependencyKind, Graph, GraphNode, InArchive,
                     InNewQueue, LookupFailed, Missing, NodeStatus, OutdatedInArchive, PackageId)
from .version_parser import is_compatible

logger = logging.getLogger(__name__)

DEDUPE_MARKER = "(*)"
CYCLE_MARKER = "(cycle)"

UTF8_SYMBOLS = {"down": "│", "tee": "├", "ell": "└", "right": "─"}
ASCII_SYMBOLS = {"down": "|", "tee": "|", "ell": "`", "right": "-"}

GLYPH_PACKAGED = "  "
GLYPH_NEWER = "🔽"
GLYPH_NEW_QUEUE = "🆕"
GLYPH_OUTDATED = "⌛"
GLYPH_MISSING = "🔴"
GLYPH_LOOKUP_FAILED = "❓"


class PatternError(ValueError):
    """A `--format` pattern uses an unknown placeholder or unbalanced braces."""


class Pattern:
    """Line format pattern: `{p}` package, `{l}` license, `{r}` repository."""

    PLACEHOLDER = re.compile(r'\{([^{}]*)\}')
    ARGUMENTS = ("p", "l", "r")

    def __init__(self, text: str = "{p}"):
        self.text = text
        self.chunks: List[Tuple[bool, str]] = []  # (is_argument, value)
        pos = 0
        for match in self.PLACEHOLDER.finditer(text):
            self._raw(text[pos:match.start()])
            if match.group(1) not in self.ARGUMENTS:
                raise PatternError(f"unsupported pattern `{match.group(1)}`")
            self.chunks.append((True, match.group(1)))
            pos = match.end()
        self._raw(text[pos:])

    def _raw(self, raw: str) -> None:
        if "{" in raw or "}" in raw:
            raise PatternError(f"unbalanced braces in format `{self.text}`")
        if raw:
            self.chunks.append((False, raw))


@dataclass
class RenderOptions:
    """How the graph is walked and which lines are produced."""

    invert: bool = False
    depth: Optional[int] = None
    include_dev: bool = True
    focus: Optional[str] = None  # `name[:version]` of the subtree to show
    no_dedupe: bool = False
    charset: str = "utf8"
    prefix: str = "indent"  # indent, depth or none
    only_blocking: bool = False
    duplicates: bool = False
    collapse_packaged: bool = True


@dataclass
class RenderedLine:
    """One occurrence of a node in the rendered tree."""

    node: GraphNode
    status: Optional[NodeStatus]
    depth: int
    prefix: str
    kind: Optional[DependencyKind] = None  # kind of the edge leading here, None at a tree root
    marker: Optional[str] = None
    tree: int = 0  # index of the tree when several are rendered

    @property
    def package_id(self) -> PackageId:
        return self.node.package_id

    @property
    def glyph(self) -> str:
        return status_glyph(self.status)


def status_glyph(status: Optional[NodeStatus]) -> str:
    archive = status.archive_status if status else None
    if isinstance(archive, InArchive):
        return GLYPH_NEWER if archive.newer else GLYPH_PACKAGED
    if isinstance(archive, InNewQueue):
        return GLYPH_NEW_QUEUE
    if isinstance(archive, OutdatedInArchive):
        return GLYPH_OUTDATED
    if isinstance(archive, LookupFailed):
        return GLYPH_LOOKUP_FAILED
    return GLYPH_MISSING


def find_duplicates(graph: Graph) -> List[PackageId]:
    """Packages present in more than one version, sorted by name and version."""
    by_name: Dict[str, List[PackageId]] = defaultdict(list)
    for package_id in graph.nodes:
        by_name[package_id.name].append(package_id)
    duplicates = [pid for ids in by_name.values() if len(ids) > 1 for pid in ids]
    return sorted(duplicates, key=lambda pid: (pid.name, pid.version))


class TreeRenderer:
    """Walks the graph from its start packages and yields one line per node occurrence."""

    def __init__(self, graph: Graph, statuses: Dict[PackageId, NodeStatus],
                 options: Optional[RenderOptions] = None):
        self.graph = graph
        self.statuses = statuses
        self.options = options or RenderOptions()
        self.symbols = ASCII_SYMBOLS if self.options.charset == "ascii" else UTF8_SYMBOLS
        self.order = {pid: i for i, pid in enumerate(graph.nodes)}
        self.incoming = self.options.invert or self.options.duplicates

    def starts(self) -> List[PackageId]:
        if self.options.duplicates:
            return find_duplicates(self.graph)
        if self.options.focus:
            return [find_package(self.graph, self.options.focus)]
        if self.graph.root is not None:
            return [self.graph.root]
        return list(self.graph.roots)

    def render(self) -> Iterator[RenderedLine]:
        for tree, start in enumerate(self.starts()):
            yield from self._walk(start, None, [], set(), set(), tree)

    def children(self, package_id: PackageId) -> List[Tuple[DependencyEdge, PackageId]]:
        node = self.graph.node(package_id)
        edges = node.incoming if self.incoming else node.outgoing
        result = []
        for edge in edges:
            other = edge.source if self.incoming else edge.target
            if edge.kind is DependencyKind.DEV and not self.options.include_dev:
                continue
            if self.options.only_blocking and not self._blocking(other):
                continue
            result.append((edge, other))
        result.sort(key=lambda item: (KIND_ORDER[item[0].kind], self.order[item[1]]))
        return result

    def _blocking(self, package_id: PackageId) -> bool:
        status = self.statuses.get(package_id)
        return status is None or status.blocking

    def _prefix(self, levels: List[bool]) -> str:
        if self.options.prefix == "depth":
            return str(len(levels))
        if self.options.prefix == "none" or not levels:
            return ""
        parts = [(self.symbols["down"] if more else " ") + "   " for more in levels[:-1]]
        corner = self.symbols["tee"] if levels[-1] else self.symbols["ell"]
        parts.append(f"{corner}{self.symbols['right'] * 2} ")
        return "".join(parts)

    def _collapsed(self, status: Optional[NodeStatus]) -> bool:
        """Packaged, non-blocking subtrees are not expanded unless asked for."""
        if not self.options.collapse_packaged or self.options.no_dedupe:
            return False
        return status is not None and status.is_packaged and not status.blocking

    def _walk(self, package_id: PackageId, kind: Optional[DependencyKind], levels: List[bool],
              path: Set[PackageId], expanded: Set[PackageId], tree: int) -> Iterator[RenderedLine]:
        status = self.statuses.get(package_id)
        children = self.children(package_id)
        depth = len(levels)

        marker = None
        if package_id in path:
            marker = CYCLE_MARKER
        elif package_id in expanded and children and not self.options.no_dedupe:
            marker = DEDUPE_MARKER

        yield RenderedLine(
            node=self.graph.node(package_id),
            status=status,
            depth=depth,
            prefix=self._prefix(levels),
            kind=kind,
            marker=marker,
            tree=tree,
        )

        if marker is not None:
            return
        if self.options.depth is not None and depth >= self.options.depth:
            return
        if depth > 0 and self._collapsed(status):
            return

        expanded.add(package_id)
        path.add(package_id)
        for i, (edge, child) in enumerate(children):
            levels.append(i < len(children) - 1)
            yield from self._walk(child, edge.kind, levels, path, expanded, tree)
            levels.pop()
        path.discard(package_id)


def render(graph: Graph, statuses: Dict[PackageId, NodeStatus],
           options: Optional[RenderOptions] = None) -> Iterator[RenderedLine]:
    """
    Lazily render the annotated graph as tree lines.

    Raises:
        PackageSpecError: if `options.focus` matches no package or several
    """
    return TreeRenderer(graph, statuses, options).render()


class OutputFormatter:
    """Formatter for rendered lines (human text or JSON lines)."""

    @staticmethod
    def status_text(line: RenderedLine) -> Text:
        """The `name vX.Y.Z (status)` part of a line, with colors."""
        package_id = line.package_id
        package = package_id.full_name
        archive = line.status.archive_status if line.status else None
        text = Text()

        if isinstance(archive, InArchive):
            if archive.newer:
                text.append(package, style="yellow")
                text.append(" (newer, ")
                text.append(archive.version, style="magenta")
                text.append(" in debian)")
            elif archive.version == str(package_id.version):
                text.append(package, style="green")
                text.append(" (in debian)")
            else:
                text.append(package, style="green")
                text.append(" (")
                text.append(archive.version, style="yellow")
                text.append(" in debian)")
        elif isinstance(archive, InNewQueue):
            text.append(package, style="blue")
            text.append(" (")
            text.append(archive.version, style="yellow")
            text.append(" in debian NEW queue")
            if archive.age is not None:
                text.append(f", {archive.age.days} days")
            text.append(")")
        elif isinstance(archive, OutdatedInArchive):
            text.append(package, style="red")
            text.append(" (outdated, ")
            text.append(archive.archive_version, style="red")
            text.append(" in debian)")
        elif isinstance(archive, LookupFailed):
            text.append(package, style="red")
            text.append(f" (lookup failed: {archive.reason})", style="dim")
        else:
            text.append(package)

        if not package_id.is_registry and package_id.source_detail:
            text.append(f" ({package_id.source_detail})")
        if line.status and line.status.reason is BlockingReason.UNREGISTERED_SOURCE:
            text.append(" (not on crates.io)", style="dim")
        return text

    @staticmethod
    def format_human(line: RenderedLine, pattern: Optional[Pattern] = None,
                     show_blocked_by: bool = False) -> Text:
        """
        Format one line as ` <glyph> <tree prefix><pattern>`.

        Args:
            line: Rendered line
            pattern: Format pattern, `{p}` by default
            show_blocked_by: Append the dependency a blocking node waits on
        """
        pattern = pattern or Pattern()
        node = line.node
        text = Text(f" {line.glyph} {line.prefix}")
        for is_argument, value in pattern.chunks:
            if not is_argument:
                text.append(value)
            elif value == "p":
                text.append_text(OutputFormatter.status_text(line))
            elif value == "l":
                text.append(node.license or "")
            elif value == "r":
                text.append(node.repository or "")

        if line.kind is DependencyKind.BUILD:
            text.append(" [build]", style="dim")
        elif line.kind is DependencyKind.DEV:
            text.append(" [dev]", style="dim")
        if line.marker:
            text.append(f" {line.marker}")
        if show_blocked_by and line.status and line.status.blocked_by is not None:
            text.append(f" (blocked by {line.status.blocked_by})", style="dim red")
        return text

    @staticmethod
    def build_purl(package_id: PackageId) -> str:
        qualifiers = {}
        if not package_id.is_registry and package_id.source_detail:
            key = "vcs_url" if package_id.source.value == "git" else "download_url"
            qualifiers[key] = package_id.source_detail
        return PackageURL(type="cargo", name=package_id.name, version=str(package_id.version),
                          qualifiers=qualifiers or None).to_string()

    @staticmethod
    def debian_info(status: Optional[NodeStatus], package_id: PackageId) -> Optional[Dict]:
        archive = status.archive_status if status else None
        if archive is None or isinstance(archive, Missing):
            return None
        info = {"status": archive.label}
        if isinstance(archive, InArchive):
            info.update(version=archive.version, in_unstable=True, in_new=False,
                        compatible=is_compatible(archive.version, package_id.version),
                        newer=archive.newer, outdated=False)
        elif isinstance(archive, InNewQueue):
            info.update(version=archive.version, in_unstable=False, in_new=True,
                        compatible=is_compatible(archive.version, package_id.version),
                        newer=False, outdated=False,
                        age_days=archive.age.days if archive.age is not None else None)
        elif isinstance(archive, OutdatedInArchive):
            info.update(version=archive.archive_version, in_unstable=True, in_new=False,
                        compatible=False, newer=False, outdated=True)
        elif isinstance(archive, LookupFailed):
            info.update(reason=archive.reason)
        return info

    @staticmethod
    def format_json(line: RenderedLine) -> str:
        """Format one line as a JSON object."""
        status = line.status
        record = {
            "name": line.package_id.name,
            "cargo_lock_version": str(line.package_id.version),
            "source": line.package_id.source.value,
            "purl": OutputFormatter.build_purl(line.package_id),
            "repository": line.node.repository,
            "license": line.node.license,
            "debian": OutputFormatter.debian_info(status, line.package_id),
            "blocking": status.blocking if status else None,
            "blocking_reason": status.reason.value if status else None,
            "blocked_by": str(status.blocked_by) if status and status.blocked_by else None,
            "kind": line.kind.value if line.kind else None,
            "marker": line.marker,
            "depth": line.depth,
        }
        return json.dumps(record)
