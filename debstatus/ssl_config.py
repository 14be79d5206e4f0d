"""HTTP session configuration for archive queries.

ftp-master endpoints are occasionally slow or return transient 5xx errors,
and some networks intercept TLS with their own certificate authority. This
module builds a requests session that retries idempotent requests and trusts
an extra CA bundle when one is configured.
"""

import logging
import os
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__

logger = logging.getLogger(__name__)

# Checked in order; the first one pointing at an existing file wins
CA_BUNDLE_ENV_VARS = ["DEBSTATUS_CA_BUNDLE", "REQUESTS_CA_BUNDLE"]

USER_AGENT = f"debstatus/{__version__}"


def get_ca_bundle_path() -> Optional[str]:
    """Find a custom CA bundle configured through the environment."""
    for var in CA_BUNDLE_ENV_VARS:
        path = os.environ.get(var)
        if path and os.path.exists(path):
            return path
        if path:
            logger.warning(f"{var} points to missing file {path}, ignoring")
    return None


def create_retry(retries: int = 3, backoff: float = 0.5) -> Retry:
    """Retry policy for read-only archive queries."""
    return Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET", "HEAD"]),
    )


def create_session(retries: int = 3, ca_bundle: Optional[str] = None) -> requests.Session:
    """Create a requests session for archive and NEW queue queries.

    Args:
        retries: Number of retries for transient failures
        ca_bundle: Path to a CA bundle; defaults to the environment setting

    Returns:
        A configured requests.Session
    """
    session = requests.Session()
    session.headers.update({
        "Accept": "application/json, text/plain",
        "User-Agent": USER_AGENT,
    })

    adapter = HTTPAdapter(max_retries=create_retry(retries))
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    ca_bundle = ca_bundle or get_ca_bundle_path()
    if ca_bundle:
        logger.info(f"Using CA bundle {ca_bundle}")
        session.verify = ca_bundle

    return session
