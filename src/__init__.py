# src/__init__.py - v1
"""annoreview: client-side cache and write layer for the review backend."""

from annoreview.version import __version__

__all__ = ["__version__"]
