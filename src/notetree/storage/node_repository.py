"""Repository for content node storage and retrieval."""

import datetime
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from notetree.exceptions import (
    CyclicMoveError,
    ErrorCode,
    NodeNotFoundError,
    SerializationError,
    ValidationError,
)
from notetree.models.db_models import DBNode, DBNodeLink
from notetree.models.schema import (
    ContentNode,
    EntityKind,
    NodeUpdate,
    NodeWithChildren,
    ensure_timezone_aware,
    new_id,
    utc_now,
)
from notetree.observability import traced
from notetree.storage.base import Repository
from notetree.storage.store import Store
from notetree.utils import escape_like_pattern

logger = logging.getLogger(__name__)


def subtree_cte(node_id: str):
    """Recursive CTE over the ids of a node and all of its descendants."""
    subtree = select(DBNode.id).where(DBNode.id == node_id).cte("subtree", recursive=True)
    child = aliased(DBNode, name="child")
    return subtree.union(select(child.id).where(child.parent_id == subtree.c.id))


def validation_error_from(error: PydanticValidationError) -> ValidationError:
    """Convert a pydantic validation error into the store's ValidationError."""
    first = error.errors()[0] if error.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    code = ErrorCode.VALIDATION_FAILED
    if field == "content" and "maximum length" in first.get("msg", ""):
        code = ErrorCode.CONTENT_TOO_LONG
    return ValidationError(
        first.get("msg", str(error)), field=field, value=first.get("input"), code=code
    )


def encode_json_field(value: Any, field: str) -> str:
    """Serialize a structured field to the JSON text stored in the row.

    Raises:
        SerializationError: If the value is not JSON-serializable.
    """
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(
            f"Cannot serialize {field}", field=field, original_error=e
        ) from e


def decode_properties(raw: Optional[str], node_id: str) -> Dict[str, Any]:
    """Decode stored properties; malformed data degrades to an empty dict."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Malformed properties on node {node_id}, using empty: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Properties on node {node_id} are not a mapping, using empty")
        return {}
    return value


def decode_tags(raw: Optional[str], node_id: str) -> List[str]:
    """Decode stored tags; malformed data degrades to an empty list."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Malformed tags on node {node_id}, using empty: {e}")
        return []
    if not isinstance(value, list):
        logger.warning(f"Tags on node {node_id} are not a list, using empty")
        return []
    return [tag for tag in value if isinstance(tag, str) and tag.strip()]


def _to_db_time(value: datetime.datetime) -> datetime.datetime:
    """UTC-normalize a timestamp and drop tzinfo for storage."""
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def _next_timestamp(previous: Optional[datetime.datetime]) -> datetime.datetime:
    """A storage timestamp strictly later than ``previous``."""
    now = _to_db_time(utc_now())
    if previous is not None and now <= previous:
        now = previous + datetime.timedelta(microseconds=1)
    return now


class NodeRepository(Repository[ContentNode]):
    """Repository for content nodes and their hierarchy.

    Every mutation runs inside one ``Store.with_transaction`` call, and all
    existence and cycle checks happen inside that transaction before the
    first write. Children are never stored; they are queried from
    ``parent_id`` on every read, ordered by ``order`` then ``created_at``.
    """

    def __init__(self, store: Store):
        """Initialize the repository.

        Args:
            store: The store handle to run reads and transactions through.
        """
        self.store = store
        self._user_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        """The local actor recorded as ``created_by`` on new nodes."""
        if self._user_id is None:
            self._user_id = self.store.default_user_id()
        return self._user_id

    # ------------------------------------------------------------------
    # Session-level helpers (also used by the link index and resolvers)
    # ------------------------------------------------------------------

    @staticmethod
    def child_ids(session: Session, node_id: str) -> List[str]:
        """Ids of a node's direct children in sibling order."""
        return list(session.scalars(
            select(DBNode.id)
            .where(DBNode.parent_id == node_id)
            .order_by(DBNode.order, DBNode.created_at, DBNode.id)
        ).all())

    def to_model(
        self, session: Session, db_node: DBNode, children: Optional[List[str]] = None
    ) -> ContentNode:
        """Hydrate a row into a ContentNode, deriving its children.

        Stored rows are not revalidated: limits apply when writing, so a row
        written under a larger ``max_content_length`` still reads back whole.
        """
        if children is None:
            children = self.child_ids(session, db_node.id)
        return ContentNode.model_construct(
            id=db_node.id,
            content=db_node.content,
            parent_id=db_node.parent_id,
            order=db_node.order,
            properties=decode_properties(db_node.properties, db_node.id),
            tags=decode_tags(db_node.tags, db_node.id),
            created_at=ensure_timezone_aware(db_node.created_at),
            updated_at=ensure_timezone_aware(db_node.updated_at),
            created_by=db_node.created_by,
            version=db_node.version,
            children=children,
        )

    def load(self, session: Session, node_id: str) -> ContentNode:
        """Fetch a node inside an existing session.

        Raises:
            NodeNotFoundError: If no node has this id.
        """
        db_node = session.get(DBNode, node_id)
        if db_node is None:
            raise NodeNotFoundError(node_id)
        return self.to_model(session, db_node)

    def check_move(
        self, session: Session, node_id: str, new_parent_id: Optional[str]
    ) -> None:
        """Validate a reparent before anything is written.

        Walks the ancestor chain of ``new_parent_id``; if ``node_id`` shows up
        (or is the new parent itself) the move would create a cycle.

        Raises:
            NodeNotFoundError: If the new parent does not exist.
            CyclicMoveError: If the move would place the node under itself.
        """
        if new_parent_id is None:
            return
        if new_parent_id == node_id:
            raise CyclicMoveError(node_id, new_parent_id)

        chain: List[str] = []
        current: Optional[str] = new_parent_id
        while current is not None:
            if current == node_id:
                raise CyclicMoveError(node_id, new_parent_id, chain)
            if current in chain:
                logger.error(f"Existing cycle detected in ancestors of {new_parent_id}")
                break
            row = session.execute(
                select(DBNode.parent_id).where(DBNode.id == current)
            ).first()
            if row is None:
                if current == new_parent_id:
                    raise NodeNotFoundError(
                        new_parent_id,
                        message=f"Parent node '{new_parent_id}' not found",
                        code=ErrorCode.PARENT_NOT_FOUND,
                    )
                break
            chain.append(current)
            current = row[0]

    @staticmethod
    def _require_parent(session: Session, parent_id: Optional[str]) -> None:
        if parent_id is not None and session.get(DBNode, parent_id) is None:
            raise NodeNotFoundError(
                parent_id,
                message=f"Parent node '{parent_id}' not found",
                code=ErrorCode.PARENT_NOT_FOUND,
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @traced("create_node")
    def create(
        self,
        content: str,
        parent_id: Optional[str] = None,
        order: Optional[int] = None,
        properties: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> ContentNode:
        """Create a node and return it fully hydrated.

        Args:
            content: Text of the node.
            parent_id: Parent node, or None for a root.
            order: Sibling sort key (default 0).
            properties: Structured values.
            tags: Labels; duplicates collapse.

        Raises:
            ValidationError: If the input fails validation.
            SerializationError: If properties or tags are not JSON-serializable.
            NodeNotFoundError: If parent_id does not exist.
        """
        now = utc_now()
        try:
            node = ContentNode(
                id=new_id(EntityKind.BLOCK),
                content=content,
                parent_id=parent_id,
                order=0 if order is None else order,
                properties=properties or {},
                tags=tags or [],
                created_at=now,
                updated_at=now,
                created_by=self.user_id,
            )
        except PydanticValidationError as e:
            raise validation_error_from(e) from e

        properties_json = encode_json_field(node.properties, "properties")
        tags_json = encode_json_field(node.tags, "tags")

        def _insert(session: Session) -> None:
            self._require_parent(session, node.parent_id)
            stamp = _to_db_time(now)
            session.add(DBNode(
                id=node.id,
                content=node.content,
                parent_id=node.parent_id,
                order=node.order,
                properties=properties_json,
                tags=tags_json,
                created_at=stamp,
                updated_at=stamp,
                created_by=node.created_by,
                version=1,
            ))

        self.store.with_transaction(_insert, "create_node")
        logger.debug(f"Created node {node.id} under {node.parent_id}")
        return self.get(node.id)

    @traced("get_node")
    def get(self, id: str) -> ContentNode:
        """Get a node by id, with its ordered child ids.

        Raises:
            NodeNotFoundError: If no node has this id.
        """
        return self.store.with_connection(lambda session: self.load(session, id), "get_node")

    @traced("get_subtree")
    def get_with_subtree(self, id: str) -> NodeWithChildren:
        """Get a node with its full descendant tree hydrated.

        The whole subtree is read with one recursive query on one connection
        and assembled bottom-up, so depth is bounded only by storage.

        Raises:
            NodeNotFoundError: If no node has this id.
        """
        def _load_subtree(session: Session) -> NodeWithChildren:
            subtree = subtree_cte(id)
            rows = session.scalars(
                select(DBNode).join(subtree, DBNode.id == subtree.c.id)
            ).all()
            by_id = {row.id: row for row in rows}
            if id not in by_id:
                raise NodeNotFoundError(id)

            children: Dict[str, List[DBNode]] = {row_id: [] for row_id in by_id}
            for row in rows:
                if row.id != id and row.parent_id in children:
                    children[row.parent_id].append(row)
            for siblings in children.values():
                siblings.sort(key=lambda row: (row.order, row.created_at, row.id))

            # Pre-order walk, then build each level once its children exist
            visit_order = []
            stack = [id]
            while stack:
                node_id = stack.pop()
                visit_order.append(node_id)
                stack.extend(row.id for row in children[node_id])

            built: Dict[str, NodeWithChildren] = {}
            for node_id in reversed(visit_order):
                child_ids = [row.id for row in children[node_id]]
                built[node_id] = NodeWithChildren.model_construct(
                    node=self.to_model(session, by_id[node_id], children=child_ids),
                    child_nodes=[built[child_id] for child_id in child_ids],
                )
            return built[id]

        return self.store.with_connection(_load_subtree, "get_subtree")

    def exists(self, id: str) -> bool:
        """Check whether a node exists."""
        return self.store.with_connection(
            lambda session: session.get(DBNode, id) is not None, "node_exists"
        )

    @traced("update_node")
    def update(
        self, id: str, changes: Optional[NodeUpdate] = None, **fields: Any
    ) -> ContentNode:
        """Apply a partial update and return the updated node.

        Only supplied fields are written, each with its own statement, inside
        one transaction. ``updated_at`` and ``version`` are always bumped, even
        when nothing else changes. A supplied ``parent_id`` is checked exactly
        like ``move``.

        Args:
            id: Node to update.
            changes: A NodeUpdate; alternatively pass the fields as keywords.

        Raises:
            NodeNotFoundError: If the node (or a new parent) does not exist.
            CyclicMoveError: If a parent change would create a cycle.
            ValidationError: If the supplied values are invalid.
            SerializationError: If properties or tags cannot be serialized.
        """
        if changes is None:
            try:
                changes = NodeUpdate(**fields)
            except PydanticValidationError as e:
                raise validation_error_from(e) from e
        elif fields:
            raise ValidationError("Pass either a NodeUpdate or keyword fields, not both")

        supplied = changes.supplied_fields()
        values: Dict[Any, Any] = {}
        if "content" in supplied:
            values[DBNode.content] = supplied["content"]
        if "properties" in supplied:
            values[DBNode.properties] = encode_json_field(supplied["properties"], "properties")
        if "tags" in supplied:
            values[DBNode.tags] = encode_json_field(supplied["tags"], "tags")
        if "parent_id" in supplied:
            values[DBNode.parent_id] = supplied["parent_id"]
        if "order" in supplied:
            values[DBNode.order] = supplied["order"]

        def _apply(session: Session) -> None:
            db_node = session.get(DBNode, id)
            if db_node is None:
                raise NodeNotFoundError(id)
            if changes.moves_node:
                self.check_move(session, id, supplied["parent_id"])
            previous = db_node.updated_at

            for column, value in values.items():
                session.execute(
                    update(DBNode)
                    .where(DBNode.id == id)
                    .values({column: value})
                    .execution_options(synchronize_session=False)
                )
            self._touch(session, id, previous)

        self.store.with_transaction(_apply, "update_node")
        logger.debug(f"Updated node {id}: fields={sorted(supplied)}")
        return self.get(id)

    def _touch(
        self, session: Session, node_id: str, previous: Optional[datetime.datetime]
    ) -> None:
        """Bump updated_at and version; zero rows affected means not found."""
        result = session.execute(
            update(DBNode)
            .where(DBNode.id == node_id)
            .values({
                DBNode.updated_at: _next_timestamp(previous),
                DBNode.version: DBNode.version + 1,
            })
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NodeNotFoundError(node_id)

    @traced("delete_node")
    def delete(self, id: str) -> None:
        """Delete a node, its whole subtree and every incident link edge.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        def _delete(session: Session) -> int:
            if session.get(DBNode, id) is None:
                raise NodeNotFoundError(id)
            subtree = subtree_cte(id)
            removed = session.scalar(select(func.count()).select_from(subtree))
            session.execute(
                delete(DBNodeLink)
                .where(or_(
                    DBNodeLink.source_node_id.in_(select(subtree.c.id)),
                    DBNodeLink.target_node_id.in_(select(subtree.c.id)),
                ))
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(DBNode)
                .where(DBNode.id.in_(select(subtree.c.id)))
                .execution_options(synchronize_session=False)
            )
            return removed

        removed = self.store.with_transaction(_delete, "delete_node")
        logger.info(f"Deleted node {id} and {removed - 1} descendants")

    @traced("move_node")
    def move(
        self, id: str, new_parent_id: Optional[str], new_order: int
    ) -> ContentNode:
        """Reparent and/or reorder a node.

        The ancestor chain of ``new_parent_id`` is walked before any write;
        moving a node under itself or one of its descendants is rejected and
        leaves the node untouched.

        Raises:
            NodeNotFoundError: If the node or the new parent does not exist.
            CyclicMoveError: If the move would create a cycle.
        """
        if isinstance(new_order, bool) or not isinstance(new_order, int):
            raise ValidationError("order must be an integer", field="order", value=new_order)

        def _move(session: Session) -> None:
            db_node = session.get(DBNode, id)
            if db_node is None:
                raise NodeNotFoundError(id)
            self.check_move(session, id, new_parent_id)
            previous = db_node.updated_at
            session.execute(
                update(DBNode)
                .where(DBNode.id == id)
                .values({DBNode.parent_id: new_parent_id, DBNode.order: new_order})
                .execution_options(synchronize_session=False)
            )
            self._touch(session, id, previous)

        self.store.with_transaction(_move, "move_node")
        logger.debug(f"Moved node {id} under {new_parent_id} at order {new_order}")
        return self.get(id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query(self, statement, operation: str) -> List[ContentNode]:
        def _run(session: Session) -> List[ContentNode]:
            return [self.to_model(session, db) for db in session.scalars(statement).all()]

        return self.store.with_connection(_run, operation)

    @traced("list_roots")
    def list_roots(self) -> List[ContentNode]:
        """All root nodes, ordered by order then created_at."""
        return self._query(
            select(DBNode)
            .where(DBNode.parent_id.is_(None))
            .order_by(DBNode.order, DBNode.created_at, DBNode.id),
            "list_roots",
        )

    def get_children(self, id: str) -> List[ContentNode]:
        """Direct children of a node in sibling order.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        def _run(session: Session) -> List[ContentNode]:
            node = self.load(session, id)
            return [self.load(session, child_id) for child_id in node.children]

        return self.store.with_connection(_run, "get_children")

    def get_ancestors(self, id: str) -> List[ContentNode]:
        """Ancestors of a node, nearest first, ending at its root.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        def _run(session: Session) -> List[ContentNode]:
            ancestors: List[ContentNode] = []
            seen = {id}
            current = self.load(session, id).parent_id
            while current is not None and current not in seen:
                seen.add(current)
                node = self.load(session, current)
                ancestors.append(node)
                current = node.parent_id
            return ancestors

        return self.store.with_connection(_run, "get_ancestors")

    def find_by_tag(self, tag: str) -> List[ContentNode]:
        """Nodes carrying a tag, most recently updated first."""
        pattern = f"%{escape_like_pattern(json.dumps(tag, ensure_ascii=False))}%"
        candidates = self._query(
            select(DBNode)
            .where(DBNode.tags.like(pattern, escape="\\"))
            .order_by(DBNode.updated_at.desc()),
            "find_by_tag",
        )
        return [node for node in candidates if node.has_tag(tag)]

    def find_by_content(self, content: str) -> List[ContentNode]:
        """Nodes whose content equals the given text exactly, oldest first."""
        return self._query(
            select(DBNode)
            .where(DBNode.content == content)
            .order_by(DBNode.created_at, DBNode.id),
            "find_by_content",
        )

    def get_recent(self, limit: int = 20) -> List[ContentNode]:
        """Most recently updated nodes."""
        return self._query(
            select(DBNode).order_by(DBNode.updated_at.desc()).limit(limit),
            "get_recent",
        )

    def count_nodes(self) -> int:
        """Total number of stored nodes."""
        return self.store.with_connection(
            lambda session: session.scalar(select(func.count(DBNode.id))) or 0,
            "count_nodes",
        )
