"""SQLAlchemy database models for the notetree store."""
import datetime
import logging
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, String, Text,
                        create_engine, event, func, select, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from notetree.config import config

logger = logging.getLogger(__name__)


def _utcnow_naive() -> datetime.datetime:
    """Current UTC time without tzinfo, the form SQLite stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNode(Base):
    """Database model for a content node."""
    __tablename__ = "nodes"
    id = Column(String(255), primary_key=True)
    content = Column(Text, nullable=False)
    parent_id = Column(
        String(255), ForeignKey("nodes.id", ondelete="CASCADE"), nullable=True, index=True
    )
    order = Column("order_index", Integer, nullable=False, default=0)
    # JSON text; decoded leniently on read
    properties = Column(Text, nullable=True)
    tags = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, index=True)
    created_by = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        """Return string representation of node."""
        return f"<Node(id='{self.id}', parent_id={self.parent_id!r}, v{self.version})>"


class DBNodeLink(Base):
    """Database model for a directed reference between two nodes."""
    __tablename__ = "node_links"
    source_node_id = Column(
        String(255), ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True
    )
    target_node_id = Column(
        String(255), ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True,
        index=True,
    )

    def __repr__(self) -> str:
        """Return string representation of link."""
        return f"<NodeLink(source='{self.source_node_id}', target='{self.target_node_id}')>"


class DBUser(Base):
    """Database model for the local actor."""
    __tablename__ = "users"
    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    preferences = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow_naive, nullable=False)
    updated_at = Column(DateTime, default=_utcnow_naive, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of user."""
        return f"<User(id='{self.id}', name='{self.name}')>"


def create_db_engine(
    database_path: Optional[Union[str, Path]] = None,
    pool_size: Optional[int] = None,
    pool_timeout: Optional[float] = None,
    busy_timeout_ms: Optional[int] = None,
) -> Engine:
    """Create an engine with a bounded pool and hardened SQLite settings.

    - QueuePool of exactly ``pool_size`` connections (no overflow); checkout
      waits at most ``pool_timeout`` seconds
    - foreign keys enforced on every connection (cascading deletes rely on it)
    - WAL journal with NORMAL synchronous mode
    - explicit BEGIN so that reads and writes inside one transaction are atomic
    """
    pool_size = pool_size or config.pool_size
    pool_timeout = pool_timeout if pool_timeout is not None else config.pool_timeout
    busy_timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else config.busy_timeout_ms

    engine = create_engine(
        config.get_db_url(Path(database_path) if database_path else None),
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Take transaction control away from the driver; see do_begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        # Writers take the RESERVED lock up front so busy_timeout applies
        if conn.get_execution_options().get("begin_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


def init_db(engine: Engine, default_user_id: Optional[str] = None,
            default_user_name: Optional[str] = None) -> bool:
    """Create the schema and the default user. Idempotent.

    Returns:
        True if the FTS5 index is available, False if SQLite lacks FTS5.
    """
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE INDEX IF NOT EXISTS idx_nodes_order ON nodes(parent_id, order_index)"
        ))
    fts_ok = init_fts5(engine)
    ensure_default_user(
        engine,
        default_user_id or config.default_user_id,
        default_user_name or config.default_user_name,
    )
    return fts_ok


def ensure_default_user(engine: Engine, user_id: str, name: str) -> None:
    """Insert the single local user if the users table is empty."""
    with engine.begin() as conn:
        count = conn.execute(select(func.count()).select_from(DBUser.__table__)).scalar()
        if not count:
            now = _utcnow_naive()
            conn.execute(
                DBUser.__table__.insert().values(
                    id=user_id, name=name, created_at=now, updated_at=now
                )
            )
            logger.info(f"Created default user '{user_id}'")


def init_fts5(engine: Engine) -> bool:
    """Initialize the FTS5 table mirroring node content.

    Uses an external-content table kept in sync by triggers. Returns False
    (and leaves search to the LIKE fallback) if this SQLite build has no FTS5.
    """
    try:
        with engine.begin() as conn:
            conn.execute(text("""
                CREATE VIRTUAL TABLE IF NOT EXISTS nodes_fts USING fts5(
                    content,
                    content='nodes',
                    content_rowid='rowid'
                )
            """))

            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS nodes_fts_insert AFTER INSERT ON nodes BEGIN
                    INSERT INTO nodes_fts(rowid, content) VALUES (new.rowid, new.content);
                END
            """))

            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS nodes_fts_delete AFTER DELETE ON nodes BEGIN
                    INSERT INTO nodes_fts(nodes_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                END
            """))

            conn.execute(text("""
                CREATE TRIGGER IF NOT EXISTS nodes_fts_update AFTER UPDATE OF content ON nodes BEGIN
                    INSERT INTO nodes_fts(nodes_fts, rowid, content)
                    VALUES ('delete', old.rowid, old.content);
                    INSERT INTO nodes_fts(rowid, content) VALUES (new.rowid, new.content);
                END
            """))
    except OperationalError as e:
        logger.warning(f"FTS5 unavailable, full-text search will use LIKE fallback: {e}")
        return False
    return True


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild the FTS5 index from the nodes table.

    Returns:
        Number of nodes indexed.
    """
    with engine.begin() as conn:
        conn.execute(text("INSERT INTO nodes_fts(nodes_fts) VALUES ('rebuild')"))
        count = conn.execute(text("SELECT COUNT(*) FROM nodes")).scalar()
    return count or 0


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
