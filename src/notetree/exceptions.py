"""Custom exceptions for the notetree store.

Every repository and link-index operation surfaces exactly one of these
error kinds to its caller; lower-level SQLAlchemy / sqlite3 errors are
translated at the store boundary.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Node errors (1xxx)
    NODE_NOT_FOUND = 1001
    PARENT_NOT_FOUND = 1002

    # Hierarchy errors (2xxx)
    CYCLIC_MOVE = 2001

    # Storage errors (4xxx)
    STORE_UNAVAILABLE = 4001
    POOL_TIMEOUT = 4002
    TRANSACTION_FAILED = 4003
    CONSTRAINT_VIOLATION = 4004

    # Serialization errors (5xxx)
    SERIALIZATION_FAILED = 5001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    CONTENT_TOO_LONG = 7002
    INVALID_DATE = 7003
    EMPTY_PROBE = 7004


class NoteTreeError(Exception):
    """Base exception for all notetree errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NodeNotFoundError(NoteTreeError):
    """Raised when an operation targets a nonexistent node id."""

    def __init__(
        self,
        node_id: str,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NODE_NOT_FOUND,
    ):
        super().__init__(
            message or f"Node with ID '{node_id}' not found",
            code=code,
            details={"node_id": node_id},
        )
        self.node_id = node_id


class ValidationError(NoteTreeError):
    """Raised for malformed or out-of-bounds input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class CyclicMoveError(NoteTreeError):
    """Raised when a reparent would place a node under itself or a descendant.

    Attributes:
        node_id: The node being moved.
        new_parent_id: The rejected parent.
        ancestor_chain: Ancestors of new_parent_id walked before the cycle was found.
    """

    def __init__(
        self,
        node_id: str,
        new_parent_id: str,
        ancestor_chain: Optional[List[str]] = None,
    ):
        super().__init__(
            f"Moving node '{node_id}' under '{new_parent_id}' would create a cycle",
            code=ErrorCode.CYCLIC_MOVE,
            details={"node_id": node_id, "new_parent_id": new_parent_id},
        )
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        self.ancestor_chain: List[str] = list(ancestor_chain) if ancestor_chain else []


class StoreUnavailableError(NoteTreeError):
    """Raised when a connection or transaction could not be acquired or committed."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORE_UNAVAILABLE,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class SerializationError(NoteTreeError):
    """Raised when a structured field (properties / tags) cannot be encoded."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if field:
            details["field"] = field
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.SERIALIZATION_FAILED, details=details)
        self.field = field
        self.original_error = original_error
