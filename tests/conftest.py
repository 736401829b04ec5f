"""Global test fixtures for the Parley test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest

from parley.core.clock import ManualClock
from parley.core.config import CoreSettings, clear_config_cache
from parley.core.container import ParleyCore, create_core
from parley.core.models import GroupType, User
from parley.core.repository import InMemoryRepository

# ============================================================================
# PostgreSQL Availability Detection
# ============================================================================


def _check_postgres_available() -> tuple[bool, str | None]:
    """Check if PostgreSQL is available for integration tests.

    Returns:
        Tuple of (is_available, error_message)
    """
    try:
        import psycopg2
    except ImportError:
        return False, "psycopg2 not installed"

    host = os.environ.get("PARLEY_DB_HOST", "localhost")
    port = int(os.environ.get("PARLEY_DB_PORT", "5432"))
    dbname = os.environ.get("PARLEY_DB_NAME", "parley")
    user = os.environ.get("PARLEY_DB_USER", "parley")
    password = os.environ.get("PARLEY_DB_PASSWORD", "")

    try:
        conn = psycopg2.connect(
            host=host,
            port=port,
            database=dbname,
            user=user,
            password=password,
            connect_timeout=3,
        )
        conn.close()
        return True, None
    except psycopg2.OperationalError as e:
        return False, f"PostgreSQL connection failed: {e}"


# Check PostgreSQL availability once at module load
POSTGRES_AVAILABLE, POSTGRES_ERROR = _check_postgres_available()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "requires_postgres: mark test as requiring a real PostgreSQL database"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests that require PostgreSQL when the database is unavailable."""
    if POSTGRES_AVAILABLE:
        return

    skip_postgres = pytest.mark.skip(reason=f"PostgreSQL not available: {POSTGRES_ERROR}")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_postgres)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all PARLEY_ environment variables and reset the config cache."""
    for key in list(os.environ.keys()):
        if key.startswith("PARLEY_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(os.path.dirname(__file__))  # keep a stray .env out of reach
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def settings(clean_env) -> CoreSettings:
    """Default settings with a fixed encryption secret."""
    return CoreSettings().model_copy(update={"encryption_key": "test-secret"})


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def core(settings, repository, clock) -> ParleyCore:
    """Fully wired core over the in-memory repository and a manual clock."""
    return create_core(settings=settings, repository=repository, clock=clock)


@pytest.fixture
def membership(core):
    return core.membership


@pytest.fixture
def messages(core):
    return core.messages


@pytest.fixture
def bus(core):
    return core.bus


@pytest.fixture
def make_user(membership):
    """Factory registering users by name."""

    def factory(username: str = "user") -> User:
        return membership.register_user(username, credential="secret-token")

    return factory


@pytest.fixture
def owner(make_user) -> User:
    return make_user("owner")


@pytest.fixture
def public_group(membership, owner):
    return membership.create_group(owner.id, "General", GroupType.PUBLIC)


@pytest.fixture
def private_group(membership, owner):
    return membership.create_group(owner.id, "Alpha", GroupType.PRIVATE)


# ============================================================================
# psycopg2 Connection Pool fixtures
# ============================================================================


@pytest.fixture
def reset_db_pool():
    """Reset the connection pool singleton around a test."""
    from parley.core import db

    db._pool = None
    yield
    db._pool = None


@pytest.fixture
def mock_psycopg2_pool(reset_db_pool):
    """Mock the psycopg2 connection pool."""
    mock_conn = MagicMock()
    mock_cursor = MagicMock()
    mock_pool = MagicMock()

    mock_conn.closed = False
    mock_conn.cursor.return_value = mock_cursor
    mock_cursor.__enter__ = MagicMock(return_value=mock_cursor)
    mock_cursor.__exit__ = MagicMock(return_value=False)

    mock_pool.getconn.return_value = mock_conn
    mock_pool.putconn = MagicMock()
    mock_pool.closeall = MagicMock()

    with patch("parley.core.db.psycopg2_pool.ThreadedConnectionPool") as mock_pool_class:
        mock_pool_class.return_value = mock_pool
        yield {
            "pool_class": mock_pool_class,
            "pool": mock_pool,
            "connection": mock_conn,
            "cursor": mock_cursor,
        }
