"""Exhaustive mask search with background-relative scoring."""

from masksearch.version import __version__

__all__ = ["__version__"]
