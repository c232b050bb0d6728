"""Find-or-create resolution of per-day journal pages."""
import datetime
import json
import logging
import threading
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from notetree.config import config
from notetree.exceptions import ErrorCode, ValidationError
from notetree.models.db_models import DBNode
from notetree.models.schema import ContentNode, EntityKind, new_id, utc_now
from notetree.observability import traced
from notetree.storage.node_repository import NodeRepository, encode_json_field
from notetree.utils import escape_like_pattern

logger = logging.getLogger(__name__)

DateLike = Union[datetime.date, str]


def normalize_date(value: DateLike) -> str:
    """Render a date (or an ISO ``YYYY-MM-DD`` string) as ``YYYY-MM-DD``.

    Raises:
        ValidationError: If the value is not a valid calendar date.
    """
    if isinstance(value, datetime.datetime):
        value = value.date()
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()).isoformat()
        except ValueError as e:
            raise ValidationError(
                f"Invalid date '{value}', expected YYYY-MM-DD",
                field="date",
                value=value,
                code=ErrorCode.INVALID_DATE,
            ) from e
    raise ValidationError(
        f"Invalid date of type {type(value).__name__}",
        field="date",
        value=value,
        code=ErrorCode.INVALID_DATE,
    )


class DailyNoteResolver:
    """Returns the single journal page for a calendar day, creating it on demand.

    A daily note is a root node whose content is the ISO date and whose tags
    include the journal tag. Lookup and creation share one transaction, and
    calls on the same resolver are serialized by a lock so two threads never
    both observe "missing" and create duplicates.
    """

    def __init__(self, nodes: NodeRepository, journal_tag: Optional[str] = None):
        self.nodes = nodes
        self.store = nodes.store
        self.journal_tag = journal_tag or config.journal_tag
        self._lock = threading.Lock()

    def _find(self, session: Session, date_text: str) -> Optional[str]:
        tag_pattern = f"%{escape_like_pattern(json.dumps(self.journal_tag, ensure_ascii=False))}%"
        return session.scalar(
            select(DBNode.id)
            .where(
                DBNode.parent_id.is_(None),
                DBNode.content == date_text,
                DBNode.tags.like(tag_pattern, escape="\\"),
            )
            .order_by(DBNode.created_at, DBNode.id)
            .limit(1)
        )

    def get_daily_note(self, date: DateLike) -> Optional[ContentNode]:
        """Look up the daily note for a date without creating it."""
        date_text = normalize_date(date)
        node_id = self.store.with_connection(
            lambda session: self._find(session, date_text), "get_daily_note"
        )
        return self.nodes.get(node_id) if node_id else None

    @traced("resolve_daily_note")
    def resolve_daily_note(self, date: DateLike) -> ContentNode:
        """Return the daily note for a date, creating it if it does not exist.

        Args:
            date: A ``datetime.date`` or an ISO ``YYYY-MM-DD`` string.

        Raises:
            ValidationError: If the date is invalid.
        """
        date_text = normalize_date(date)
        user_id = self.nodes.user_id

        def _find_or_create(session: Session) -> str:
            existing = self._find(session, date_text)
            if existing is not None:
                return existing

            stamp = utc_now().astimezone(datetime.timezone.utc).replace(tzinfo=None)
            node_id = new_id(EntityKind.PAGE)
            session.add(DBNode(
                id=node_id,
                content=date_text,
                parent_id=None,
                order=0,
                properties=encode_json_field({"journal_date": date_text}, "properties"),
                tags=encode_json_field([self.journal_tag], "tags"),
                created_at=stamp,
                updated_at=stamp,
                created_by=user_id,
                version=1,
            ))
            logger.info(f"Created daily note {node_id} for {date_text}")
            return node_id

        with self._lock:
            node_id = self.store.with_transaction(_find_or_create, "resolve_daily_note")
        return self.nodes.get(node_id)
