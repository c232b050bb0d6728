"""Storage layer for the notetree store."""

from notetree.storage.base import Repository
from notetree.storage.fts_index import FtsIndex
from notetree.storage.link_index import LinkIndex
from notetree.storage.node_repository import NodeRepository
from notetree.storage.store import Store

__all__ = [
    "Repository",
    "Store",
    "NodeRepository",
    "LinkIndex",
    "FtsIndex",
]
