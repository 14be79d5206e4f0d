"""Client for querying the Debian archive and its NEW queue."""

import logging
import os
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import requests
from debian.deb822 import Deb822

from .ssl_config import create_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewQueueEntry:
    """One source upload waiting in the NEW queue."""

    source: str
    version: str
    age: Optional[timedelta] = None


class DebianArchiveClient:
    """Client for ftp-master's madison API and the NEW queue listing."""

    MADISON_URL = "https://api.ftp-master.debian.org/madison"
    NEW_QUEUE_URL = "https://ftp-master.debian.org/new.822"

    def __init__(
        self,
        suite: str = "sid",
        madison_url: Optional[str] = None,
        new_queue_url: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the API client."""
        self.suite = suite
        self.madison_url = madison_url or os.environ.get("DEBSTATUS_MADISON_URL", self.MADISON_URL)
        self.new_queue_url = new_queue_url or os.environ.get("DEBSTATUS_NEW_QUEUE_URL", self.NEW_QUEUE_URL)
        self.timeout = timeout
        self.session = session or create_session()

    def get_suite_versions(self, source_names: List[str]) -> List[str]:
        """
        Get all versions of the given source packages in the stable suite.

        Args:
            source_names: Debian source package names, e.g. `rust-serde`

        Returns:
            Debian version strings, in the order the archive reported them

        Raises:
            requests.RequestException: if the query fails
            ValueError: if the response is not the expected JSON
        """
        params = {
            "package": " ".join(source_names),
            "s": self.suite,
            "a": "source",
            "f": "json",
        }
        logger.debug(f"Querying -> {self.suite}: {', '.join(source_names)}")

        response = self.session.get(self.madison_url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return self._parse_madison(response.json())

    @staticmethod
    def _parse_madison(data: Any) -> List[str]:
        """Collect versions from madison's `[{source: {suite: {version: {...}}}}]` payload."""
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise ValueError(f"unexpected madison response: {type(data).__name__}")

        versions: List[str] = []
        for entry in data:
            if not isinstance(entry, dict):
                raise ValueError("unexpected madison entry")
            for suites in entry.values():
                if not isinstance(suites, dict):
                    raise ValueError("unexpected madison suite listing")
                for by_version in suites.values():
                    for version in by_version:
                        if version not in versions:
                            versions.append(version)
        return versions

    def get_new_queue(self) -> Dict[str, List[NewQueueEntry]]:
        """
        Download the NEW queue listing.

        Returns:
            Mapping of source package name to its queued uploads

        Raises:
            requests.RequestException: if the download fails
        """
        logger.debug(f"Querying -> new: {self.new_queue_url}")
        response = self.session.get(self.new_queue_url, timeout=self.timeout)
        response.raise_for_status()
        return self._parse_new_queue(response.text)

    @staticmethod
    def _parse_new_queue(content: str, now: Optional[float] = None) -> Dict[str, List[NewQueueEntry]]:
        """Parse the deb822 NEW queue listing into entries keyed by source."""
        now = time.time() if now is None else now
        queue: Dict[str, List[NewQueueEntry]] = {}

        for paragraph in Deb822.iter_paragraphs(content.splitlines(), use_apt_pkg=False):
            source = paragraph.get("Source")
            if not source:
                continue

            age = None
            last_modified = paragraph.get("Last-Modified")
            if last_modified and last_modified.strip().isdigit():
                age = timedelta(seconds=max(0, int(now - int(last_modified))))

            # A source may have several versions queued at once
            for version in paragraph.get("Version", "").split():
                queue.setdefault(source, []).append(
                    NewQueueEntry(source=source, version=version, age=age)
                )

        logger.info(f"NEW queue lists {len(queue)} source packages")
        return queue

    def close(self):
        """Close the session and clean up resources."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
