"""Common test fixtures for the notetree store."""

import logging
import tempfile
from pathlib import Path

import pytest

from notetree.config import config
from notetree.observability import metrics
from notetree.services.daily_notes import DailyNoteResolver
from notetree.services.notetree_service import NoteTreeService
from notetree.storage.link_index import LinkIndex
from notetree.storage.node_repository import NodeRepository
from notetree.storage.store import Store


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "base_dir", temp_db_dir)
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_notetree.db")
    monkeypatch.setattr(config, "log_dir", temp_db_dir / "logs")
    yield config


@pytest.fixture
def store(test_config):
    """Create an initialized store on a fresh database file."""
    store = Store(test_config.database_path)
    yield store
    store.dispose()


@pytest.fixture
def node_repository(store):
    """Create a test node repository."""
    return NodeRepository(store)


@pytest.fixture
def link_index(store, node_repository):
    """Create a link index sharing the repository."""
    return LinkIndex(store, node_repository)


@pytest.fixture
def daily_resolver(node_repository):
    """Create a daily-note resolver."""
    return DailyNoteResolver(node_repository)


@pytest.fixture
def notetree_service(store):
    """Create a service facade over the test store."""
    return NoteTreeService(store)


@pytest.fixture
def fresh_metrics():
    """Reset the global metrics collector around a test."""
    metrics.reset()
    yield metrics
    metrics.reset()


@pytest.fixture
def restore_logging():
    """Detach handlers that a test adds to the notetree logger."""
    notetree_logger = logging.getLogger("notetree")
    handlers = list(notetree_logger.handlers)
    level = notetree_logger.level
    yield notetree_logger
    for handler in notetree_logger.handlers:
        if handler not in handlers:
            handler.close()
    notetree_logger.handlers = handlers
    notetree_logger.setLevel(level)
