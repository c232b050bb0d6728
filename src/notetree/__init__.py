"""
notetree - persistence core for a hierarchical, block-based note application.

Content nodes form a tree stored in SQLite. A derived link index tracks the
[[wiki-link]] references between nodes and answers backlink queries.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notetree")
except PackageNotFoundError:
    __version__ = "0.3.0"
