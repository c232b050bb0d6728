"""Wiki-style reference index between content nodes."""

import logging
import re
from typing import List, Optional, Union

from sqlalchemy import delete, func, literal_column, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from notetree.exceptions import (
    ErrorCode,
    NodeNotFoundError,
    ValidationError,
)
from notetree.models.db_models import DBNode, DBNodeLink
from notetree.models.schema import ContentNode, LinkEdge
from notetree.observability import traced
from notetree.storage.node_repository import NodeRepository
from notetree.storage.store import Store
from notetree.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# [[target]]; non-greedy so "[[a]] and [[b]]" yields two references
REFERENCE_PATTERN = re.compile(r"\[\[(.*?)\]\]")


def extract_references(content: str) -> List[str]:
    """Extract reference texts from node content.

    Texts are whitespace-trimmed, empty references are dropped and
    duplicates collapse onto their first occurrence.

    Example:
        "See [[Project]] and [[ Project ]] or [[]]" -> ["Project"]
    """
    if not content:
        return []
    seen = set()
    references = []
    for match in REFERENCE_PATTERN.finditer(content):
        reference = match.group(1).strip()
        if reference and reference not in seen:
            seen.add(reference)
            references.append(reference)
    return references


class LinkIndex:
    """Maintains directed edges derived from ``[[...]]`` references.

    Edges are only rebuilt when the caller asks for it through
    ``resynchronize``; editing a node's content never touches the index.
    A reference to text no node carries yet produces no edge, and creating
    such a node later does not backfill edges from earlier resyncs.
    """

    def __init__(self, store: Store, nodes: Optional[NodeRepository] = None):
        self.store = store
        self.nodes = nodes or NodeRepository(store)

    @staticmethod
    def extract_references(content: str) -> List[str]:
        """See the module-level ``extract_references``."""
        return extract_references(content)

    @staticmethod
    def _resolve(session: Session, reference: str) -> Optional[str]:
        """Resolve a reference text to a node id, exact match first."""
        exact = session.scalar(
            select(DBNode.id)
            .where(DBNode.content == reference)
            .order_by(DBNode.created_at, DBNode.id)
            .limit(1)
        )
        if exact is not None:
            return exact
        return session.scalar(
            select(DBNode.id)
            .where(DBNode.content.like(f"{escape_like_pattern(reference)}%", escape="\\"))
            .order_by(DBNode.created_at, DBNode.id)
            .limit(1)
        )

    @traced("resynchronize")
    def resynchronize(self, node_id: Union[str, ContentNode]) -> None:
        """Replace every outgoing edge of a node with freshly resolved ones.

        Runs in one transaction: the node's existing outgoing edges are
        deleted, then each reference in its current content is resolved and
        inserted. Duplicate resolutions are ignored. A node that references
        its own text links to itself.

        Args:
            node_id: The source node. A ContentNode is accepted as well.

        Raises:
            NodeNotFoundError: If the source node does not exist.
        """
        if isinstance(node_id, ContentNode):
            node_id = node_id.id

        def _resync(session: Session) -> int:
            source = session.get(DBNode, node_id)
            if source is None:
                raise NodeNotFoundError(node_id)

            session.execute(
                delete(DBNodeLink)
                .where(DBNodeLink.source_node_id == node_id)
                .execution_options(synchronize_session=False)
            )

            linked = 0
            for reference in extract_references(source.content):
                target_id = self._resolve(session, reference)
                if target_id is None:
                    logger.debug(f"Unresolved reference [[{reference}]] in {node_id}")
                    continue
                session.execute(
                    sqlite_insert(DBNodeLink)
                    .values(source_node_id=node_id, target_node_id=target_id)
                    .on_conflict_do_nothing()
                )
                linked += 1
            return linked

        linked = self.store.with_transaction(_resync, "resynchronize")
        logger.debug(f"Resynchronized links of {node_id}: {linked} resolved")

    def edges_from(self, node_id: str) -> List[LinkEdge]:
        """Outgoing edges of a node in insertion order."""
        return self._edges(DBNodeLink.source_node_id == node_id, "edges_from")

    def edges_to(self, node_id: str) -> List[LinkEdge]:
        """Incoming edges of a node in insertion order."""
        return self._edges(DBNodeLink.target_node_id == node_id, "edges_to")

    def _edges(self, condition, operation: str) -> List[LinkEdge]:
        def _query(session: Session) -> List[LinkEdge]:
            rows = session.execute(
                select(DBNodeLink.source_node_id, DBNodeLink.target_node_id)
                .where(condition)
                .order_by(literal_column("node_links.rowid"))
            ).all()
            return [LinkEdge(source_node_id=s, target_node_id=t) for s, t in rows]

        return self.store.with_connection(_query, operation)

    def _hydrate(self, node_ids: List[str]) -> List[ContentNode]:
        result = []
        for node_id in node_ids:
            try:
                result.append(self.nodes.get(node_id))
            except NodeNotFoundError:
                logger.debug(f"Skipping dangling link to {node_id}")
        return result

    @traced("backlinks")
    def backlinks(self, node_id: str) -> List[ContentNode]:
        """Nodes that reference the given node."""
        return self._hydrate([edge.source_node_id for edge in self.edges_to(node_id)])

    @traced("outgoing")
    def outgoing(self, node_id: str) -> List[ContentNode]:
        """Nodes the given node references."""
        return self._hydrate([edge.target_node_id for edge in self.edges_from(node_id)])

    @traced("unlinked_mentions")
    def unlinked_mentions(self, node_id: str, probe_text: str) -> List[ContentNode]:
        """Nodes whose content contains ``probe_text``, case-sensitively.

        The result is not filtered against existing edges and includes the
        node identified by ``node_id`` itself when its content matches.

        Raises:
            ValidationError: If probe_text is empty.
        """
        if not probe_text:
            raise ValidationError(
                "Probe text cannot be empty",
                field="probe_text",
                code=ErrorCode.EMPTY_PROBE,
            )

        def _query(session: Session) -> List[ContentNode]:
            rows = session.scalars(
                select(DBNode)
                .where(func.instr(DBNode.content, probe_text) > 0)
                .order_by(DBNode.created_at, DBNode.id)
            ).all()
            return [self.nodes.to_model(session, row) for row in rows]

        mentions = self.store.with_connection(_query, "unlinked_mentions")
        logger.debug(f"Found {len(mentions)} mentions of {probe_text!r} for {node_id}")
        return mentions

    def count_edges(self) -> int:
        """Total number of stored edges."""
        return self.store.with_connection(
            lambda session: session.scalar(select(func.count()).select_from(DBNodeLink)) or 0,
            "count_edges",
        )
