"""FTS5 full-text search over node content.

Queries the ``nodes_fts`` external-content table that triggers keep in step
with ``nodes``; degrades to a LIKE scan when FTS5 is missing or a query is
rejected.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError, OperationalError, SQLAlchemyError

from notetree.exceptions import ValidationError
from notetree.models.db_models import rebuild_fts_index
from notetree.storage.store import Store, translate_db_error
from notetree.utils import escape_like_pattern

logger = logging.getLogger(__name__)

FTS5_KEYWORDS = {"AND", "OR", "NOT", "NEAR"}

_MATCH_SQL = text("""
    SELECT n.id, n.content, bm25(nodes_fts) AS rank
    FROM nodes_fts
    JOIN nodes n ON n.rowid = nodes_fts.rowid
    WHERE nodes_fts MATCH :query
    ORDER BY rank
    LIMIT :limit
""")

_FALLBACK_SQL = text("""
    SELECT id, content
    FROM nodes
    WHERE content LIKE :term ESCAPE '\\'
    ORDER BY updated_at DESC
    LIMIT :limit
""")


class FtsIndex:
    """Full-text search with graceful degradation.

    Args:
        store: Store whose database holds the ``nodes_fts`` table.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self.available: bool = store.fts_available

    def search(
        self, query: str, limit: int = 50, literal: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        """Search node content.

        Args:
            query: Search text; FTS5 syntax is kept when it looks intentional.
            limit: Maximum number of results.
            literal: None = auto-detect, True = phrase match, False = raw FTS5.

        Returns:
            Dicts with ``id``, ``content``, ``rank`` and ``search_mode``.

        Raises:
            ValidationError: If the query is blank.
        """
        if not query or not query.strip():
            raise ValidationError("Search query cannot be empty", field="query")

        if not self.available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(query, limit)

        if literal is None:
            literal = self._should_escape(query)
        safe_query = self._escape_query(query) if literal else query

        session = self.store.session_factory()
        try:
            rows = session.execute(_MATCH_SQL, {"query": safe_query, "limit": limit}).fetchall()
        except OperationalError as e:
            logger.warning(f"FTS5 query failed for '{query}': {e}. Using fallback search.")
            return self._fallback_text_search(query, limit)
        except DatabaseError as e:
            logger.error(f"FTS5 database error: {e}. Using fallback search.")
            return self._fallback_text_search(query, limit)
        except SQLAlchemyError as e:
            raise translate_db_error(e, "fts_search") from e
        finally:
            session.close()

        return [
            {"id": row[0], "content": row[1], "rank": row[2], "search_mode": "fts5"}
            for row in rows
        ]

    def rebuild(self) -> int:
        """Repopulate the FTS5 index from the nodes table.

        Returns:
            Number of nodes indexed.
        """
        try:
            count = rebuild_fts_index(self.store.engine)
        except (OperationalError, DatabaseError) as e:
            raise translate_db_error(e, "rebuild_fts") from e
        self.available = True
        logger.info(f"FTS5 index rebuilt with {count} nodes")
        return count

    @staticmethod
    def _should_escape(query: str) -> bool:
        """Auto-detect whether a query needs FTS5 escaping."""
        words = query.upper().split()
        if any(kw in words for kw in FTS5_KEYWORDS):
            return False
        if query.count('"') >= 2:
            return False
        if re.search(r"\b\w+\*", query):
            return False
        return True

    @staticmethod
    def _escape_query(query: str) -> str:
        """Quote the query as an FTS5 phrase."""
        result = query.replace('"', '""')
        result = re.sub(r"[*^]", "", result)
        return f'"{result}"'

    def _fallback_text_search(self, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        """LIKE-based fallback when FTS5 cannot answer."""
        term = f"%{escape_like_pattern(query)}%"

        def _query(session) -> List[Dict[str, Any]]:
            rows = session.execute(_FALLBACK_SQL, {"term": term, "limit": limit}).fetchall()
            return [
                {"id": row[0], "content": row[1], "rank": -1.0, "search_mode": "fallback"}
                for row in rows
            ]

        results = self.store.with_connection(_query, "fallback_search")
        logger.debug(f"Fallback search returned {len(results)} results for query '{query}'")
        return results
