"""Client-side task worker runtime for a remote workflow orchestration server."""

__version__ = "0.1.0"
