"""Service layer tying the store, node repository, link index and resolvers together."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from notetree.models.schema import ContentNode, LinkEdge, NodeUpdate, NodeWithChildren
from notetree.observability import metrics
from notetree.services.daily_notes import DailyNoteResolver, DateLike
from notetree.storage.fts_index import FtsIndex
from notetree.storage.link_index import LinkIndex
from notetree.storage.node_repository import NodeRepository
from notetree.storage.store import Store

logger = logging.getLogger(__name__)


class NoteTreeService:
    """Facade over one notetree database.

    Owns a ``Store`` and the components built on it. Content edits never
    resynchronize links implicitly; call ``resynchronize`` after an edit when
    the outgoing references should follow the new content.
    """

    def __init__(self, store: Optional[Store] = None):
        """Initialize the service.

        Args:
            store: Store to operate on. Opened with config defaults if None.
        """
        self.store = store or Store()
        self.nodes = NodeRepository(self.store)
        self.links = LinkIndex(self.store, self.nodes)
        self.daily = DailyNoteResolver(self.nodes)
        self.fts = FtsIndex(self.store)

    @classmethod
    def open(cls, path: Union[str, Path], **store_options: Any) -> "NoteTreeService":
        """Open (creating if needed) the database at ``path``."""
        return cls(Store(path, **store_options))

    def close(self) -> None:
        """Release every pooled connection."""
        self.store.dispose()

    def __enter__(self) -> "NoteTreeService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Nodes
    # =========================================================================

    def create_node(
        self,
        content: str,
        parent_id: Optional[str] = None,
        order: Optional[int] = None,
        properties: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> ContentNode:
        """Create a node."""
        return self.nodes.create(content, parent_id, order, properties, tags)

    def get_node(self, node_id: str) -> ContentNode:
        """Get a node by id."""
        return self.nodes.get(node_id)

    def get_tree(self, node_id: str) -> NodeWithChildren:
        """Get a node with its whole subtree."""
        return self.nodes.get_with_subtree(node_id)

    def update_node(
        self, node_id: str, changes: Optional[NodeUpdate] = None, **fields: Any
    ) -> ContentNode:
        """Partially update a node."""
        return self.nodes.update(node_id, changes, **fields)

    def move_node(
        self, node_id: str, new_parent_id: Optional[str], new_order: int = 0
    ) -> ContentNode:
        """Reparent and/or reorder a node."""
        return self.nodes.move(node_id, new_parent_id, new_order)

    def delete_node(self, node_id: str) -> None:
        """Delete a node with its subtree and incident links."""
        self.nodes.delete(node_id)

    def list_roots(self) -> List[ContentNode]:
        """List the top-level nodes."""
        return self.nodes.list_roots()

    # =========================================================================
    # Links
    # =========================================================================

    def resynchronize(self, node_id: str) -> None:
        """Rebuild a node's outgoing links from its current content."""
        self.links.resynchronize(node_id)

    def backlinks(self, node_id: str) -> List[ContentNode]:
        """Nodes referencing the given node."""
        return self.links.backlinks(node_id)

    def outgoing(self, node_id: str) -> List[ContentNode]:
        """Nodes the given node references."""
        return self.links.outgoing(node_id)

    def unlinked_mentions(self, node_id: str, probe_text: str) -> List[ContentNode]:
        """Nodes mentioning ``probe_text`` in their content."""
        return self.links.unlinked_mentions(node_id, probe_text)

    def edges_from(self, node_id: str) -> List[LinkEdge]:
        return self.links.edges_from(node_id)

    # =========================================================================
    # Journal and search
    # =========================================================================

    def daily_note(self, date: DateLike) -> ContentNode:
        """Find or create the journal page for a date."""
        return self.daily.resolve_daily_note(date)

    def search(self, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Full-text search over node content."""
        return self.fts.search(query, limit)

    def rebuild_fts(self) -> int:
        """Rebuild the FTS5 index.

        Returns:
            Number of nodes indexed.
        """
        return self.fts.rebuild()

    def stats(self) -> Dict[str, Any]:
        """Counts describing the database, plus this process's operation metrics."""
        return {
            "database_path": str(self.store.database_path),
            "nodes": self.nodes.count_nodes(),
            "links": self.links.count_edges(),
            "fts_available": self.fts.available,
            "metrics": metrics.get_summary(),
            "operations": metrics.get_metrics(),
        }
