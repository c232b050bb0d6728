"""Data models for the notetree store."""

import datetime
import uuid
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictInt, field_validator

from notetree.config import config
from notetree.utils import sanitize_text


class EntityKind(str, Enum):
    """Kinds of entity an identifier can be namespaced with."""

    BLOCK = "block"
    PAGE = "page"


def new_id(kind: Optional[EntityKind] = None) -> str:
    """Generate a new globally unique identifier.

    The random part is a version 4 UUID (122 random bits from the OS CSPRNG)
    rendered as text. When ``kind`` is given the id is prefixed with the
    kind name, e.g. ``"block-6f1c..."``, which helps humans tell ids apart
    without affecting uniqueness.

    Args:
        kind: Optional entity kind to prefix the id with.

    Returns:
        The new identifier.
    """
    raw = str(uuid.uuid4())
    if kind is None:
        return raw
    return f"{EntityKind(kind).value}-{raw}"


def is_valid_id(value: str) -> bool:
    """Check whether a value is a bare or kind-prefixed UUID."""
    if not value:
        return False
    return extract_uuid(value) is not None


def extract_uuid(prefixed_id: str) -> Optional[str]:
    """Extract the UUID part of an id ("block-<uuid>" -> "<uuid>").

    Bare UUIDs are returned unchanged. Returns None when no valid UUID is found.
    """
    candidate = prefixed_id
    for kind in EntityKind:
        prefix = f"{kind.value}-"
        if prefixed_id.startswith(prefix):
            candidate = prefixed_id[len(prefix):]
            break
    try:
        return str(uuid.UUID(candidate))
    except (ValueError, AttributeError, TypeError):
        return None


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite has no timezone-aware column type, so every timestamp read back
    from the database comes out naive.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def clean_content(value: str) -> str:
    """Sanitize node content and enforce the configured length limit.

    Empty content is allowed (a block may be created before it is typed into).

    Raises:
        ValueError: If the content exceeds ``config.max_content_length``.
    """
    cleaned = sanitize_text(value)
    if len(cleaned) > config.max_content_length:
        raise ValueError(
            f"content exceeds maximum length of {config.max_content_length} characters"
        )
    return cleaned


def normalize_tags(values: List[str]) -> List[str]:
    """Collapse duplicate tags, keeping the first occurrence's position.

    Raises:
        ValueError: If any tag is empty or whitespace-only.
    """
    seen = set()
    result = []
    for tag in values:
        if not tag or not tag.strip():
            raise ValueError("tags cannot be empty")
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


class ContentNode(BaseModel):
    """A node of the content tree (a "block" in the editor)."""

    id: str = Field(..., description="Unique, immutable ID of the node")
    content: str = Field(default="", description="Text content of the node")
    parent_id: Optional[str] = Field(
        default=None, description="Parent node ID, None for a root"
    )
    order: StrictInt = Field(default=0, description="Sort key among siblings")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Open-schema structured values"
    )
    tags: List[str] = Field(default_factory=list, description="Ordered set of labels")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the node was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the node was last mutated (UTC)"
    )
    created_by: str = Field(..., description="ID of the authoring actor")
    version: int = Field(default=1, ge=1, description="Mutation counter")
    children: List[str] = Field(
        default_factory=list,
        description="Child IDs ordered by (order, created_at); derived, never stored",
    )

    model_config = {"extra": "forbid"}

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Sanitize control characters and bound the length."""
        return clean_content(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        """Tags form an ordered set."""
        return normalize_tags(v)

    def has_tag(self, tag: str) -> bool:
        """Check whether the node carries a tag."""
        return tag in self.tags

    @property
    def is_root(self) -> bool:
        """True when the node has no parent."""
        return self.parent_id is None


class NodeWithChildren(BaseModel):
    """A node together with its fully hydrated descendant tree."""

    node: ContentNode
    child_nodes: List["NodeWithChildren"] = Field(default_factory=list)

    def iter_nodes(self):
        """Yield this node and every descendant, depth first."""
        stack = [self]
        while stack:
            current = stack.pop()
            yield current.node
            stack.extend(reversed(current.child_nodes))

    def count(self) -> int:
        """Number of nodes in this subtree, including the root."""
        return sum(1 for _ in self.iter_nodes())


NodeWithChildren.model_rebuild()


class NodeUpdate(BaseModel):
    """A partial update of a node.

    Only fields that were explicitly supplied are applied. ``parent_id`` is
    the one field where an explicit ``None`` is meaningful (make the node a
    root); for every other field ``None`` means "leave unchanged".
    """

    content: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None
    parent_id: Optional[str] = None
    order: Optional[StrictInt] = None

    model_config = {"extra": "forbid"}

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: Optional[str]) -> Optional[str]:
        """Apply the same content rules as node creation."""
        if v is None:
            return None
        return clean_content(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Tags form an ordered set."""
        if v is None:
            return None
        return normalize_tags(v)

    def supplied_fields(self) -> Dict[str, Any]:
        """Return the fields to apply, keyed by name."""
        result = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name != "parent_id":
                continue
            result[name] = value
        return result

    @property
    def moves_node(self) -> bool:
        """True when the update changes the node's position in the tree."""
        return "parent_id" in self.model_fields_set


class LinkEdge(BaseModel):
    """A directed, existence-only reference from one node to another."""

    source_node_id: str = Field(..., description="ID of the referencing node")
    target_node_id: str = Field(..., description="ID of the referenced node")

    model_config = {"frozen": True, "extra": "forbid"}
