"""Tests for parley.core.db - connection management and the PostgreSQL repository.

Tests cover:
- Connection pool management
- Cursor context manager with commit/rollback and error translation
- Schema application
- Store SQL parameters and optimistic concurrency (mocked cursor)
- A full round trip against a real database (requires_postgres)
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, Mock, patch

import psycopg2
import pytest

from parley.core import db
from parley.core.exceptions import ConflictError, RepositoryUnavailableError
from parley.core.models import Group, GroupType, Message, User

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _mock_conn() -> tuple[MagicMock, MagicMock]:
    mock_conn = MagicMock()
    mock_cursor = MagicMock()
    mock_cursor.__enter__ = Mock(return_value=mock_cursor)
    mock_cursor.__exit__ = Mock(return_value=False)
    mock_conn.cursor.return_value = mock_cursor
    return mock_conn, mock_cursor


@pytest.fixture
def fake_cursor():
    """A cursor factory yielding one shared MagicMock cursor."""
    cursor = MagicMock()

    @contextmanager
    def factory():
        yield cursor

    factory.cursor = cursor
    return factory


# ============================================================================
# Connection pool
# ============================================================================


class TestConnectionPool:
    """Test connection pool creation and management."""

    def test_pool_creation(self, mock_psycopg2_pool, clean_env):
        """Test pool is created from config."""
        result = db._get_pool()

        assert result is mock_psycopg2_pool["pool"]
        call_kwargs = mock_psycopg2_pool["pool_class"].call_args[1]
        assert call_kwargs["minconn"] == 2
        assert call_kwargs["maxconn"] == 20
        assert call_kwargs["dbname"] == "parley"
        assert call_kwargs["options"] == "-c statement_timeout=5000"

    def test_pool_singleton(self, mock_psycopg2_pool, clean_env):
        assert db._get_pool() is db._get_pool()
        assert mock_psycopg2_pool["pool_class"].call_count == 1

    def test_close_pool(self, reset_db_pool):
        mock_pool = MagicMock()
        db._pool = mock_pool

        db.close_pool()

        mock_pool.closeall.assert_called_once()
        assert db._pool is None

    def test_close_pool_when_none(self, reset_db_pool):
        db.close_pool()
        assert db._pool is None


class TestHealthyConnection:
    def test_stale_connection_discarded(self):
        stale, _ = _mock_conn()
        stale.closed = True
        fresh, _ = _mock_conn()
        fresh.closed = False
        mock_pool = MagicMock()
        mock_pool.getconn.side_effect = [stale, fresh]

        assert db._get_healthy_connection(mock_pool, timeout=1) is fresh
        mock_pool.putconn.assert_called_once_with(stale, close=True)

    def test_gives_up_after_attempts(self):
        stale, _ = _mock_conn()
        stale.closed = True
        mock_pool = MagicMock()
        mock_pool.getconn.return_value = stale

        with pytest.raises(psycopg2.pool.PoolError):
            db._get_healthy_connection(mock_pool, timeout=1)
        assert mock_pool.getconn.call_count == 3


# ============================================================================
# Cursor context manager
# ============================================================================


class TestGetCursor:
    """Test cursor context manager."""

    @patch("parley.core.db._get_healthy_connection")
    @patch("parley.core.db._get_pool")
    def test_cursor_commit_on_success(self, mock_get_pool, mock_get_healthy_conn, clean_env):
        mock_conn, mock_cursor = _mock_conn()
        mock_pool = MagicMock()
        mock_get_pool.return_value = mock_pool
        mock_get_healthy_conn.return_value = mock_conn

        with db.get_cursor() as cur:
            assert cur is mock_cursor

        mock_conn.commit.assert_called_once()
        mock_conn.rollback.assert_not_called()
        mock_pool.putconn.assert_called_once_with(mock_conn)

    @patch("parley.core.db._get_healthy_connection")
    @patch("parley.core.db._get_pool")
    def test_cursor_rollback_on_error(self, mock_get_pool, mock_get_healthy_conn, clean_env):
        mock_conn, _ = _mock_conn()
        mock_pool = MagicMock()
        mock_get_pool.return_value = mock_pool
        mock_get_healthy_conn.return_value = mock_conn

        with pytest.raises(ValueError):
            with db.get_cursor():
                raise ValueError("test error")

        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()
        mock_pool.putconn.assert_called_once_with(mock_conn)

    @patch("parley.core.db._get_healthy_connection")
    @patch("parley.core.db._get_pool")
    def test_operational_error_translated(self, mock_get_pool, mock_get_healthy_conn, clean_env):
        mock_conn, _ = _mock_conn()
        mock_get_pool.return_value = MagicMock()
        mock_get_healthy_conn.return_value = mock_conn

        with pytest.raises(RepositoryUnavailableError) as exc_info:
            with db.get_cursor():
                raise psycopg2.OperationalError("server closed the connection")

        assert exc_info.value.operation == "query"
        assert isinstance(exc_info.value.__cause__, psycopg2.OperationalError)
        mock_conn.rollback.assert_called_once()

    @patch("parley.core.db._get_healthy_connection")
    @patch("parley.core.db._get_pool")
    def test_pool_exhaustion_translated(self, mock_get_pool, mock_get_healthy_conn, clean_env):
        mock_get_pool.return_value = MagicMock()
        mock_get_healthy_conn.side_effect = psycopg2.pool.PoolError("timeout")

        with pytest.raises(RepositoryUnavailableError) as exc_info:
            with db.get_cursor():
                pass
        assert exc_info.value.operation == "connect"

    @patch("parley.core.db._get_healthy_connection")
    @patch("parley.core.db._get_pool")
    def test_cursor_uses_realdict_factory(self, mock_get_pool, mock_get_healthy_conn, clean_env):
        from psycopg2.extras import RealDictCursor

        mock_conn, _ = _mock_conn()
        mock_get_pool.return_value = MagicMock()
        mock_get_healthy_conn.return_value = mock_conn

        with db.get_cursor():
            pass

        mock_conn.cursor.assert_called_once_with(cursor_factory=RealDictCursor)

    @patch("parley.core.db.get_cursor")
    def test_check_connection_false_when_unavailable(self, mock_get_cursor):
        mock_get_cursor.side_effect = RepositoryUnavailableError("down")
        assert db.check_connection() is False


class TestInitSchema:
    @patch("parley.core.db.get_connection")
    def test_applies_packaged_schema(self, mock_get_connection):
        mock_conn, mock_cursor = _mock_conn()
        mock_get_connection.return_value.__enter__ = Mock(return_value=mock_conn)
        mock_get_connection.return_value.__exit__ = Mock(return_value=False)

        db.init_schema()

        assert mock_conn.autocommit is True
        executed = mock_cursor.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS parley_groups" in executed
        assert "CREATE TABLE IF NOT EXISTS parley_messages" in executed

    def test_missing_schema_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            db.init_schema(str(tmp_path / "missing.sql"))


# ============================================================================
# Stores (mocked cursor)
# ============================================================================


class TestPostgresStores:
    def test_load_builds_aggregate(self, fake_cursor):
        group = Group(name="Alpha", type=GroupType.PRIVATE, owner_id="u1", created_at=T0, updated_at=T0)
        doc = group.to_dict()
        doc.pop("version")
        fake_cursor.cursor.fetchall.return_value = [{"doc": doc, "version": 4}]

        loaded = db.PostgresRepository(cursor=fake_cursor).groups.load(group.id)

        assert loaded.name == "Alpha"
        assert loaded.version == 4
        assert fake_cursor.cursor.execute.call_args[0][1] == (group.id,)

    def test_load_missing(self, fake_cursor):
        fake_cursor.cursor.fetchall.return_value = []
        assert db.PostgresRepository(cursor=fake_cursor).users.load("nope") is None

    def test_insert_new_aggregate(self, fake_cursor):
        group = Group(name="Alpha", type=GroupType.PUBLIC, owner_id="u1", created_at=T0)
        fake_cursor.cursor.fetchone.return_value = {"version": 1}

        saved = db.PostgresRepository(cursor=fake_cursor).groups.save(group)

        assert saved.version == 1
        assert group.version == 0
        params = fake_cursor.cursor.execute.call_args[0][1]
        assert params[0] == group.id
        assert params[1].adapted["name"] == "Alpha"
        assert "version" not in params[1].adapted
        assert params[2] == T0

    def test_update_checks_version(self, fake_cursor):
        message = Message(group_id="g1", sender_id="u1", ciphertext="ab", iv="cd", timestamp=T0, version=3)
        fake_cursor.cursor.fetchone.return_value = {"version": 4}

        saved = db.PostgresRepository(cursor=fake_cursor).messages.save(message)

        assert saved.version == 4
        params = fake_cursor.cursor.execute.call_args[0][1]
        assert params[1:4] == ("g1", T0, False)
        assert params[-2:] == (message.id, 3)

    def test_stale_update_conflicts(self, fake_cursor):
        user = User(username="alice", version=2)
        fake_cursor.cursor.fetchone.return_value = None

        with pytest.raises(ConflictError) as exc_info:
            db.PostgresRepository(cursor=fake_cursor).users.save(user)
        assert exc_info.value.details["expected_version"] == 2

    def test_delete(self, fake_cursor):
        fake_cursor.cursor.fetchone.return_value = {"id": "u1"}
        assert db.PostgresRepository(cursor=fake_cursor).users.delete("u1") is True

    def test_restore_params(self, fake_cursor):
        user = User(username="alice", version=5)
        db.PostgresRepository(cursor=fake_cursor).users.restore(user)

        params = fake_cursor.cursor.execute.call_args[0][1]
        assert params[0] == user.id
        assert params[1] == 6

    def test_in_range_before_wins(self, fake_cursor):
        fake_cursor.cursor.fetchall.return_value = []
        before = T0 + timedelta(minutes=5)

        db.PostgresRepository(cursor=fake_cursor).messages.in_range("g1", before=before, after=T0, limit=10)

        assert fake_cursor.cursor.execute.call_args[0][1] == ("g1", before, 10)

    def test_delete_for_group_rowcount(self, fake_cursor):
        fake_cursor.cursor.rowcount = 7
        assert db.PostgresRepository(cursor=fake_cursor).messages.delete_for_group("g1") == 7


# ============================================================================
# Real database
# ============================================================================


@pytest.mark.requires_postgres
class TestPostgresRoundTrip:
    @pytest.fixture
    def pg_repo(self, reset_db_pool):
        db.init_schema()
        repo = db.PostgresRepository()
        yield repo
        with db.get_cursor() as cur:
            cur.execute("TRUNCATE parley_users, parley_groups, parley_messages")
        db.close_pool()

    def test_group_lifecycle(self, pg_repo):
        group = pg_repo.groups.save(Group(name="Alpha", type=GroupType.PUBLIC, owner_id="u1"))
        assert group.version == 1

        group.add_member("u2")
        updated = pg_repo.groups.save(group)
        assert updated.version == 2
        assert pg_repo.groups.load(group.id).members == ["u1", "u2"]

        with pytest.raises(ConflictError):
            pg_repo.groups.save(group)

    def test_message_queries(self, pg_repo):
        for minutes in range(3):
            pg_repo.messages.save(
                Message(
                    group_id="g1",
                    sender_id="u1",
                    ciphertext="ab",
                    iv="cd",
                    timestamp=T0 + timedelta(minutes=minutes),
                )
            )

        recent = pg_repo.messages.recent("g1", 2)
        assert [m.timestamp for m in recent] == [T0 + timedelta(minutes=2), T0 + timedelta(minutes=1)]
        assert pg_repo.messages.delete_for_group("g1") == 3

    def test_users_with_group(self, pg_repo):
        pg_repo.users.save(User(username="a", groups={"g1"}))
        pg_repo.users.save(User(username="b"))
        assert [u.username for u in pg_repo.users.with_group("g1")] == ["a"]
