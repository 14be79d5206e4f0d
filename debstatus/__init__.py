"""debstatus - Debian packaging status for a Rust project's dependency tree."""

__version__ = "0.6.0"

from .graph_builder import build
from .propagator import compute_statuses
from .formatters import render

__all__ = ["__version__", "build", "compute_statuses", "render"]
