"""Input parsers for the dependency resolver (`cargo metadata`) and rustc."""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import DependencyEdge, DependencyKind, PackageId, ResolvedPackage, SourceKind
from .target import Platform
from .version_parser import parse_version

logger = logging.getLogger(__name__)

KIND_MAP = {
    None: DependencyKind.NORMAL,
    "normal": DependencyKind.NORMAL,
    "build": DependencyKind.BUILD,
    "dev": DependencyKind.DEV,
}


class ResolverError(Exception):
    """The dependency resolver failed to produce a graph."""


@dataclass
class ResolverOutput:
    """Immutable snapshot of the resolved dependency graph."""

    packages: List[ResolvedPackage] = field(default_factory=list)
    edges: List[DependencyEdge] = field(default_factory=list)
    root: Optional[PackageId] = None
    workspace_members: List[PackageId] = field(default_factory=list)


def _source_kind(source: Optional[str]) -> SourceKind:
    if source is None:
        return SourceKind.PATH
    if source.startswith("git+"):
        return SourceKind.GIT
    return SourceKind.REGISTRY


def _feature_enables_dependency(entries: Sequence[str], alias: str) -> bool:
    """Whether a feature's entry list turns on the optional dependency `alias`."""
    for entry in entries:
        if entry == f"dep:{alias}" or entry == alias:
            return True
        if entry.startswith(f"{alias}/"):  # weak `alias?/feat` entries never match
            return True
    return False


class CargoMetadataParser:
    """Parser for `cargo metadata --format-version 1` output."""

    @staticmethod
    def parse(metadata: Dict[str, Any]) -> ResolverOutput:
        """
        Convert cargo metadata JSON into resolved packages and edges.

        Args:
            metadata: Decoded `cargo metadata` document

        Returns:
            ResolverOutput with packages in metadata order and one edge per
            (dependency, kind, platform) combination

        Raises:
            ResolverError: if the metadata has no resolve graph
            ParseError: if a package version is malformed
        """
        resolve = metadata.get("resolve")
        if not resolve:
            raise ResolverError("cargo metadata contains no resolved dependency graph")

        workspace_member_ids = set(metadata.get("workspace_members", []))
        raw_packages = {p["id"]: p for p in metadata.get("packages", [])}

        ids: Dict[str, PackageId] = {}
        packages: List[ResolvedPackage] = []
        for raw_id, raw in raw_packages.items():
            kind = _source_kind(raw.get("source"))
            detail = raw.get("source")
            if kind is SourceKind.PATH and raw.get("manifest_path"):
                detail = str(Path(raw["manifest_path"]).parent)

            package_id = PackageId(
                name=raw["name"],
                version=parse_version(raw["version"]),
                source=kind,
                source_detail=detail,
            )
            ids[raw_id] = package_id
            packages.append(ResolvedPackage(
                package_id=package_id,
                features=raw.get("features") or {},
                is_workspace_member=raw_id in workspace_member_ids,
                license=raw.get("license"),
                repository=raw.get("repository"),
                manifest_path=raw.get("manifest_path"),
            ))

        edges: List[DependencyEdge] = []
        for node in resolve.get("nodes", []):
            source_raw = raw_packages.get(node["id"])
            if source_raw is None:
                logger.warning(f"Resolve node {node['id']} has no package entry, skipping")
                continue
            for dep in node.get("deps", []):
                if dep["pkg"] not in ids:
                    logger.warning(f"Dependency {dep['pkg']} has no package entry, skipping")
                    continue
                edges.extend(CargoMetadataParser._edges_for_dep(source_raw, ids[node["id"]], dep,
                                                                raw_packages[dep["pkg"]], ids[dep["pkg"]]))

        root = ids.get(resolve.get("root")) if resolve.get("root") else None
        members = [ids[m] for m in metadata.get("workspace_members", []) if m in ids]

        logger.info(f"Parsed {len(packages)} packages and {len(edges)} edges from cargo metadata")
        return ResolverOutput(packages=packages, edges=edges, root=root, workspace_members=members)

    @staticmethod
    def _edges_for_dep(source_raw: Dict, source_id: PackageId, dep: Dict,
                       target_raw: Dict, target_id: PackageId) -> List[DependencyEdge]:
        dep_kinds = dep.get("dep_kinds") or [{"kind": None, "target": None}]
        edges = []
        seen = set()
        for dep_kind in dep_kinds:
            kind_key = (dep_kind.get("kind"), dep_kind.get("target"))
            # https://github.com/rust-lang/cargo/issues/7752
            if kind_key in seen:
                continue
            seen.add(kind_key)

            manifest_dep = CargoMetadataParser._find_manifest_dependency(
                source_raw, dep["name"], target_raw["name"], *kind_key
            )
            alias = target_raw["name"]
            if manifest_dep is not None:
                alias = manifest_dep.get("rename") or manifest_dep["name"]

            optional = bool(manifest_dep and manifest_dep.get("optional"))
            required_by = frozenset(
                feature for feature, entries in (source_raw.get("features") or {}).items()
                if optional and _feature_enables_dependency(entries, alias)
            )
            edges.append(DependencyEdge(
                source=source_id,
                target=target_id,
                requirement=manifest_dep.get("req", "*") if manifest_dep else "*",
                kind=KIND_MAP.get(kind_key[0], DependencyKind.NORMAL),
                optional=optional,
                platform=kind_key[1],
                required_by_features=required_by,
                features=tuple(manifest_dep.get("features", [])) if manifest_dep else (),
                uses_default_features=manifest_dep.get("uses_default_features", True) if manifest_dep else True,
                dep_name=alias,
            ))
        return edges

    @staticmethod
    def _find_manifest_dependency(source_raw: Dict, extern_name: str, package_name: str,
                                  kind: Optional[str], target: Optional[str]) -> Optional[Dict]:
        """Find the `[dependencies]` entry a resolved edge came from."""
        for candidate in source_raw.get("dependencies", []):
            alias = candidate.get("rename") or candidate["name"]
            if candidate["name"] != package_name:
                continue
            if alias.replace("-", "_") != extern_name:
                continue
            if candidate.get("kind") != kind or candidate.get("target") != target:
                continue
            return candidate
        return None


def run_cargo_metadata(
    manifest_path: Optional[str] = None,
    features: Optional[List[str]] = None,
    all_features: bool = False,
    no_default_features: bool = False,
    frozen: bool = False,
    locked: bool = False,
    offline: bool = False,
    timeout: int = 300,
) -> Dict[str, Any]:
    """
    Run `cargo metadata` and return the parsed JSON.

    Raises:
        ResolverError: if cargo is missing, fails or prints invalid JSON
    """
    cmd = ["cargo", "metadata", "--format-version", "1"]
    if manifest_path:
        cmd.extend(["--manifest-path", str(manifest_path)])
    if features:
        cmd.extend(["--features", ",".join(features)])
    if all_features:
        cmd.append("--all-features")
    if no_default_features:
        cmd.append("--no-default-features")
    for flag, enabled in (("--frozen", frozen), ("--locked", locked), ("--offline", offline)):
        if enabled:
            cmd.append(flag)

    logger.info(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise ResolverError(f"could not run cargo metadata: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else "unknown error"
        raise ResolverError(f"cargo metadata failed: {stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ResolverError(f"cargo metadata printed invalid JSON: {e}") from e


def load_metadata_file(path: str) -> Dict[str, Any]:
    """Read previously saved `cargo metadata` JSON ('-' for stdin is handled by the caller)."""
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ResolverError(f"could not read cargo metadata from {path}: {e}") from e


def query_platform(target: Optional[str] = None) -> Optional[Platform]:
    """
    Ask rustc for the cfg values of `target` (the host when None).

    Returns None when rustc is unavailable, in which case every platform
    conditional is treated as applicable.
    """
    try:
        triple = target
        if triple is None:
            version = subprocess.run(["rustc", "-vV"], capture_output=True, text=True, timeout=60)
            for line in version.stdout.splitlines():
                if line.startswith("host:"):
                    triple = line.split(":", 1)[1].strip()

        cmd = ["rustc", "--print=cfg"]
        if target:
            cmd.extend(["--target", target])
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not run rustc, matching all targets: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"rustc --print=cfg failed, matching all targets: {result.stderr.strip()}")
        return None

    logger.debug(f"Target platform: {triple}")
    return Platform.from_rustc_cfg(triple, result.stdout)
