"""Persistent store handle: database file, schema bootstrap and transactions."""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from notetree.config import config
from notetree.exceptions import (
    ErrorCode,
    NoteTreeError,
    StoreUnavailableError,
    ValidationError,
)
from notetree.models.db_models import (
    DBUser,
    create_db_engine,
    get_session_factory,
    init_db,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def translate_db_error(error: SQLAlchemyError, operation: str) -> NoteTreeError:
    """Map a SQLAlchemy / driver error onto the store's error kinds."""
    if isinstance(error, PoolTimeoutError):
        return StoreUnavailableError(
            "Timed out waiting for a database connection",
            operation=operation,
            code=ErrorCode.POOL_TIMEOUT,
            original_error=error,
        )
    if isinstance(error, IntegrityError):
        return ValidationError(
            f"Constraint violation during {operation}: {error.orig}",
            code=ErrorCode.CONSTRAINT_VIOLATION,
        )
    if isinstance(error, OperationalError):
        return StoreUnavailableError(
            f"Database unavailable during {operation}",
            operation=operation,
            original_error=error,
        )
    return StoreUnavailableError(
        f"Database operation {operation} failed",
        operation=operation,
        code=ErrorCode.TRANSACTION_FAILED,
        original_error=error,
    )


class Store:
    """Owns the SQLite database file and its bounded connection pool.

    All higher components go through two primitives:

    - ``with_connection(op)`` runs ``op(session)`` on one pooled connection
      without committing. The connection goes back to the pool afterwards
      whatever the outcome.
    - ``with_transaction(op)`` runs ``op(session)`` in a single transaction
      that commits only if ``op`` returns normally; any exception rolls the
      whole transaction back. It starts with ``BEGIN IMMEDIATE`` so that
      concurrent writers queue on ``busy_timeout`` instead of failing.

    Driver errors never leave this class untranslated: callers only ever
    see ``NoteTreeError`` subclasses.
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        pool_size: Optional[int] = None,
        pool_timeout: Optional[float] = None,
        busy_timeout_ms: Optional[int] = None,
        initialize: bool = True,
    ):
        """Open (and by default initialize) the store.

        Args:
            database_path: SQLite file. If None, uses config.database_path.
            pool_size: Maximum number of concurrent connections.
            pool_timeout: Seconds to wait for a free connection.
            busy_timeout_ms: SQLite busy timeout per connection.
            initialize: Run schema bootstrap immediately.
        """
        self.database_path = config.get_absolute_path(
            Path(database_path) if database_path else config.database_path
        )
        self.pool_size = pool_size or config.pool_size
        self.pool_timeout = pool_timeout if pool_timeout is not None else config.pool_timeout
        self.engine = create_db_engine(
            self.database_path,
            pool_size=self.pool_size,
            pool_timeout=self.pool_timeout,
            busy_timeout_ms=busy_timeout_ms,
        )
        self.session_factory = get_session_factory(self.engine)
        self.write_session_factory = get_session_factory(
            self.engine.execution_options(begin_immediate=True)
        )
        self.fts_available = False
        logger.info(
            f"Store opened: db={self.database_path}, pool_size={self.pool_size}, "
            f"pool_timeout={self.pool_timeout}s"
        )
        if initialize:
            self.initialize()

    def initialize(self) -> None:
        """Create tables, indexes, FTS triggers and the default user.

        Safe to call any number of times.
        """
        try:
            self.fts_available = init_db(self.engine)
        except SQLAlchemyError as e:
            raise translate_db_error(e, "initialize") from e
        logger.debug(f"Schema ready (fts_available={self.fts_available})")

    @contextmanager
    def connection(self, operation: str = "read") -> Iterator[Session]:
        """Check out one connection as a session; nothing is committed."""
        session = self.session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Session]:
        """Run the body in one atomic transaction."""
        session = self.write_session_factory()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.warning(f"Transaction {operation} rolled back: {e}")
            raise translate_db_error(e, operation) from e
        finally:
            session.close()

    def with_connection(self, op: Callable[[Session], T], operation: str = "read") -> T:
        """Run ``op`` against one pooled connection and return its result."""
        with self.connection(operation) as session:
            return op(session)

    def with_transaction(self, op: Callable[[Session], T], operation: str = "transaction") -> T:
        """Run ``op`` inside a transaction; commit on success, roll back otherwise."""
        with self.transaction(operation) as session:
            return op(session)

    def default_user_id(self) -> str:
        """Get the id of the local actor recorded as ``created_by``."""
        def _query(session: Session) -> Optional[str]:
            return session.scalar(
                select(DBUser.id).order_by(DBUser.created_at, DBUser.id).limit(1)
            )

        user_id = self.with_connection(_query, "default_user_id")
        if user_id is None:
            raise StoreUnavailableError(
                "Store has no local user; was it initialized?",
                operation="default_user_id",
            )
        return user_id

    def dispose(self) -> None:
        """Close every pooled connection."""
        self.engine.dispose()
        logger.debug(f"Store disposed: {self.database_path}")

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
