"""Archive status lookups with a single-flight, process-wide cache."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple, Union

import requests
from semantic_version import Version

from .models import (InArchive, InNewQueue, LookupFailed, Missing, OutdatedInArchive,
                     PackageId)
from .api_client import DebianArchiveClient
from .version_parser import VersionParser, is_compatible, parse_version, strip_build

logger = logging.getLogger(__name__)

NEW_QUEUE_KEY = ("__new_queue__",)


@dataclass
class OracleConfig:
    """Settings for archive lookups."""

    suite: str = "sid"
    concurrency: int = 24
    timeout: float = 30
    madison_url: Optional[str] = None
    new_queue_url: Optional[str] = None


class SingleFlightCache:
    """Cache that computes each key at most once, even under concurrent callers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: Dict[Hashable, Future] = {}

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        with self._lock:
            slot = self._slots.get(key)
            owner = slot is None
            if owner:
                slot = Future()
                self._slots[key] = slot

        if owner:
            try:
                slot.set_result(compute())
            except BaseException as e:
                slot.set_exception(e)
                raise
        return slot.result()

    def peek(self, key: Hashable) -> Optional[Any]:
        """Return a finished value without waiting, or None."""
        slot = self._slots.get(key)
        if slot is None or not slot.done() or slot.exception() is not None:
            return None
        return slot.result()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()


class ArchiveOracle:
    """
    Classifies packages against the stable suite and the NEW queue.

    `index` is any object with `get_suite_versions(source_names)` and
    `get_new_queue()`, normally a DebianArchiveClient. Results are cached by
    (name, version) for the lifetime of the oracle.
    """

    def __init__(self, index, concurrency: int = 24):
        self.index = index
        self.concurrency = max(1, concurrency)
        self._cache = SingleFlightCache()

    @staticmethod
    def source_names(name: str, version: Version) -> List[str]:
        """Debian source package names a crate may be packaged under."""
        base = "rust-" + name.replace("_", "-").lower()
        if version.major > 0:
            return [base, f"{base}-{version.major}"]
        return [base, f"{base}-0.{version.minor}"]

    def lookup(self, name: str, version: Union[str, Version]):
        """
        Return the ArchiveStatus for one crate version.

        Network and archive data errors come back as LookupFailed; only a
        malformed `version` argument raises ParseError.
        """
        if isinstance(version, str):
            version = parse_version(version)
        version = strip_build(version)
        key = (name, str(version))
        return self._cache.get_or_compute(key, lambda: self._fetch(name, version))

    def lookup_package(self, package_id: PackageId):
        """ArchiveStatus for a graph package; git/path sources are never queried."""
        if not package_id.is_registry:
            return Missing()
        return self.lookup(package_id.name, package_id.version)

    def cached(self, name: str, version: Union[str, Version]):
        return self._cache.peek((name, str(version)))

    def prefetch(self, package_ids: Iterable[PackageId]) -> int:
        """
        Look up all distinct registry packages concurrently.

        Returns:
            Number of distinct packages submitted
        """
        pending: List[PackageId] = []
        seen = set()
        for package_id in package_ids:
            key = (package_id.name, str(package_id.version))
            if package_id.is_registry and key not in seen:
                seen.add(key)
                pending.append(package_id)

        if not pending:
            return 0

        workers = min(self.concurrency, len(pending))
        logger.info(f"Looking up {len(pending)} packages with {workers} workers")

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="debstatus-lookup")
        try:
            futures = [executor.submit(self.lookup, p.name, p.version) for p in pending]
            for future in as_completed(futures):
                future.result()
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return len(pending)

    def _new_queue(self) -> Dict[str, list]:
        return self._cache.get_or_compute(NEW_QUEUE_KEY, self.index.get_new_queue)

    def _fetch(self, name: str, version: Version):
        names = self.source_names(name, version)
        try:
            stable = self._parse_versions(self.index.get_suite_versions(names))
            status = self._classify_stable(stable, version)
            if status is not None:
                return status

            queued = []
            queue = self._new_queue()
            for source in names:
                for entry in queue.get(source, []):
                    queued.append((VersionParser.parse_debian(entry.version).semver, entry))
            matching = [(v, e) for v, e in queued if is_compatible(v, version) and v >= version]
            if matching:
                best, entry = max(matching, key=lambda item: item[0])
                return InNewQueue(version=str(best), age=entry.age)

            if stable:
                return OutdatedInArchive(archive_version=str(max(stable)), needed_version=str(version))
            return Missing()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Lookup failed for {name} v{version}: {e}")
            return LookupFailed(reason=str(e) or e.__class__.__name__)

    @staticmethod
    def _parse_versions(debian_versions: List[str]) -> List[Version]:
        return [VersionParser.parse_debian(v).semver for v in debian_versions]

    @staticmethod
    def _classify_stable(stable: List[Version], needed: Version) -> Optional[InArchive]:
        compatible = [v for v in stable if is_compatible(v, needed) and v >= needed]
        if compatible:
            return InArchive(version=str(max(compatible)))

        newer = [v for v in stable if v > needed]
        if newer:
            return InArchive(version=str(max(newer)), newer=True)
        return None


def create_oracle(config: OracleConfig) -> Tuple[ArchiveOracle, Any]:
    """Build an oracle backed by the live Debian archive; returns (oracle, client)."""
    client = DebianArchiveClient(
        suite=config.suite,
        madison_url=config.madison_url,
        new_queue_url=config.new_queue_url,
        timeout=config.timeout,
    )
    return ArchiveOracle(client, concurrency=config.concurrency), client
