"""Builders and fakes shared by the test modules."""

import threading
import time
from datetime import timedelta

import requests
from semantic_version import Version

from debstatus.api_client import NewQueueEntry
from debstatus.models import (DependencyEdge, DependencyKind, PackageId, ResolvedPackage,
                              SourceKind)

REGISTRY = "registry+https://github.com/rust-lang/crates.io-index"


def pid(name, version="1.0.0", source=SourceKind.REGISTRY, detail=None):
    return PackageId(name=name, version=Version(version), source=source, source_detail=detail)


def path_pid(name, version="0.1.0"):
    return pid(name, version, SourceKind.PATH, f"/tmp/{name}")


def package(package_id, features=None, member=False, license=None):
    return ResolvedPackage(package_id=package_id, features=features or {},
                           is_workspace_member=member, license=license)


def edge(source, target, kind=DependencyKind.NORMAL, optional=False, platform=None,
         required_by=(), features=(), default=True, req="*", dep_name=None):
    return DependencyEdge(
        source=source,
        target=target,
        requirement=req,
        kind=kind,
        optional=optional,
        platform=platform,
        required_by_features=frozenset(required_by),
        features=tuple(features),
        uses_default_features=default,
        dep_name=dep_name,
    )


class FakeIndex:
    """In-memory stand-in for DebianArchiveClient."""

    def __init__(self, suite=None, new=None, fail=(), gate=None):
        self.suite = suite or {}  # source name -> Debian versions
        self.new = new or {}
        self.fail = set(fail)
        self.gate = gate  # threading.Event the first query waits on
        self.calls = []
        self.new_queue_calls = 0
        self._lock = threading.Lock()

    def get_suite_versions(self, source_names):
        with self._lock:
            self.calls.append(tuple(source_names))
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail.intersection(source_names):
            raise requests.ConnectionError("archive unreachable")
        return [v for name in source_names for v in self.suite.get(name, [])]

    def get_new_queue(self):
        with self._lock:
            self.new_queue_calls += 1
        return {
            source: [NewQueueEntry(source, v, timedelta(days=3)) for v in versions]
            for source, versions in self.new.items()
        }


class StaticOracle:
    """Oracle returning fixed statuses and counting lookups per package."""

    def __init__(self, statuses):
        self.statuses = statuses
        self.lookups = {}

    def lookup_package(self, package_id):
        self.lookups[package_id] = self.lookups.get(package_id, 0) + 1
        return self.statuses[package_id]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


APP_ID = "app 0.1.0 (path+file:///tmp/app)"
SERDE_JSON_ID = f"serde_json 1.0.100 ({REGISTRY})"
RAND_ID = f"rand 0.8.5 ({REGISTRY})"
CC_ID = f"cc 1.0.83 ({REGISTRY})"
WINAPI_ID = f"winapi 0.3.9 ({REGISTRY})"
MYLIB_ID = "mylib 0.2.0 (git+https://example.com/mylib#abc123)"


def _manifest_dep(name, req, kind=None, optional=False, rename=None, target=None,
                  features=(), default=True, source=REGISTRY):
    return {
        "name": name,
        "source": source,
        "req": req,
        "kind": kind,
        "rename": rename,
        "optional": optional,
        "uses_default_features": default,
        "features": list(features),
        "target": target,
    }


def _registry_package(package_id, name, version):
    return {
        "id": package_id,
        "name": name,
        "version": version,
        "source": REGISTRY,
        "manifest_path": f"/root/.cargo/registry/{name}-{version}/Cargo.toml",
        "license": "MIT OR Apache-2.0",
        "repository": f"https://github.com/example/{name}",
        "features": {},
        "dependencies": [],
    }


def sample_metadata():
    """`cargo metadata` output for a small project with every dependency kind."""
    return {
        "packages": [
            {
                "id": APP_ID,
                "name": "app",
                "version": "0.1.0",
                "source": None,
                "manifest_path": "/tmp/app/Cargo.toml",
                "license": "MIT",
                "repository": None,
                "features": {"default": ["json"], "json": ["dep:serde_json"]},
                "dependencies": [
                    _manifest_dep("serde_json", "^1.0", optional=True),
                    _manifest_dep("rand", "^0.8", rename="random", features=["std"], default=False),
                    _manifest_dep("cc", "^1", kind="build"),
                    _manifest_dep("winapi", "^0.3", target="cfg(windows)"),
                    _manifest_dep("mylib", "*", kind="dev", source="git+https://example.com/mylib"),
                ],
            },
            _registry_package(SERDE_JSON_ID, "serde_json", "1.0.100"),
            _registry_package(RAND_ID, "rand", "0.8.5"),
            _registry_package(CC_ID, "cc", "1.0.83"),
            _registry_package(WINAPI_ID, "winapi", "0.3.9"),
            {
                "id": MYLIB_ID,
                "name": "mylib",
                "version": "0.2.0",
                "source": "git+https://example.com/mylib#abc123",
                "manifest_path": "/root/.cargo/git/mylib/Cargo.toml",
                "license": None,
                "repository": None,
                "features": {},
                "dependencies": [],
            },
        ],
        "workspace_members": [APP_ID],
        "resolve": {
            "root": APP_ID,
            "nodes": [
                {
                    "id": APP_ID,
                    "deps": [
                        {"name": "serde_json", "pkg": SERDE_JSON_ID,
                         "dep_kinds": [{"kind": None, "target": None}]},
                        {"name": "random", "pkg": RAND_ID,
                         "dep_kinds": [{"kind": None, "target": None}, {"kind": None, "target": None}]},
                        {"name": "cc", "pkg": CC_ID,
                         "dep_kinds": [{"kind": "build", "target": None}]},
                        {"name": "winapi", "pkg": WINAPI_ID,
                         "dep_kinds": [{"kind": None, "target": "cfg(windows)"}]},
                        {"name": "mylib", "pkg": MYLIB_ID,
                         "dep_kinds": [{"kind": "dev", "target": None}]},
                    ],
                },
                {"id": SERDE_JSON_ID, "deps": []},
                {"id": RAND_ID, "deps": []},
                {"id": CC_ID, "deps": []},
                {"id": WINAPI_ID, "deps": []},
                {"id": MYLIB_ID, "deps": []},
            ],
        },
    }
