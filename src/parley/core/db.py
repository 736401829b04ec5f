# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""PostgreSQL connection management and repository for Parley.

Config via PARLEY_DB_* environment variables (see ``CoreSettings``).

Each aggregate lives in its own table as a JSONB document plus a ``version``
column. Saves are compare-and-swap on that column, so a stale aggregate is
rejected with ``ConflictError`` exactly as the in-memory store does.
Connection-level driver failures surface as ``RepositoryUnavailableError``.
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Generic

import psycopg2
from psycopg2 import pool as psycopg2_pool
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import PoolError

from .config import get_config
from .exceptions import ConflictError, RepositoryUnavailableError
from .models import Group, Message, User
from .repository import T

logger = logging.getLogger(__name__)

# Errors that mean "the database is unreachable right now", not "bad query"
TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError)

# Connection pool (lazy init, thread-safe)
_pool: psycopg2_pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> psycopg2_pool.ThreadedConnectionPool:
    """Get or create the connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                config = get_config()
                _pool = psycopg2_pool.ThreadedConnectionPool(
                    **config.pool_config,
                    **config.connection_params,
                )
    return _pool


def _get_conn_with_timeout(pool: psycopg2_pool.ThreadedConnectionPool, timeout: int) -> Any:
    """Get a connection from pool with timeout.

    Raises:
        PoolError: If timeout expires before connection is available
    """
    result_queue: queue.Queue = queue.Queue()

    def _get_conn():
        try:
            result_queue.put(("success", pool.getconn()))
        except Exception as e:
            result_queue.put(("error", e))

    thread = threading.Thread(target=_get_conn, daemon=True)
    thread.start()

    try:
        result_type, result_value = result_queue.get(timeout=timeout)
    except queue.Empty:
        raise PoolError(f"Connection pool timeout after {timeout} seconds") from None
    if result_type == "error":
        raise result_value
    return result_value


def _validate_connection(conn: Any) -> bool:
    if conn.closed:
        return False
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        return True
    except psycopg2.Error:
        return False


def _get_healthy_connection(pool: psycopg2_pool.ThreadedConnectionPool, timeout: int) -> Any:
    """Get a healthy connection from pool, discarding stale ones."""
    max_attempts = 3
    for _ in range(max_attempts):
        conn = _get_conn_with_timeout(pool, timeout)
        if _validate_connection(conn):
            return conn
        logger.warning("Discarding stale database connection")
        pool.putconn(conn, close=True)
    raise PoolError(f"Failed to get healthy connection after {max_attempts} attempts")


@contextmanager
def get_cursor() -> Generator[Any, None, None]:
    """Get a database cursor with auto-commit on success, rollback on error.

    Usage:
        with get_cursor() as cur:
            cur.execute("SELECT doc FROM parley_groups")
            rows = cur.fetchall()
    """
    try:
        pool = _get_pool()
        conn = _get_healthy_connection(pool, get_config().db_pool_timeout)
    except TRANSIENT_ERRORS as e:
        raise RepositoryUnavailableError(f"Database unavailable: {e}", operation="connect") from e

    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except TRANSIENT_ERRORS as e:
        conn.rollback()
        raise RepositoryUnavailableError(f"Database error: {e}", operation="query") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def get_connection() -> Generator[Any, None, None]:
    """Get a raw pooled connection, for connection-level control (schema setup)."""
    try:
        pool = _get_pool()
        conn = _get_healthy_connection(pool, get_config().db_pool_timeout)
    except TRANSIENT_ERRORS as e:
        raise RepositoryUnavailableError(f"Database unavailable: {e}", operation="connect") from e
    try:
        yield conn
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def init_schema(schema_path: str | None = None) -> None:
    """Apply schema.sql (idempotent).

    Args:
        schema_path: Path to schema.sql (defaults to the one shipped in the package)
    """
    path = Path(schema_path) if schema_path else Path(__file__).parent.parent / "schema.sql"
    if not path.exists():
        raise FileNotFoundError(f"schema.sql not found at {path}")

    schema_sql = path.read_text()
    with get_connection() as conn:
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute(schema_sql)
    logger.info("Applied schema from %s", path)


def check_connection() -> bool:
    """Check if database connection is working."""
    try:
        with get_cursor() as cur:
            cur.execute("SELECT 1")
        return True
    except RepositoryUnavailableError:
        return False


# =============================================================================
# STORES
# =============================================================================

CursorFactory = Callable[[], AbstractContextManager[Any]]


def _comma_list(template: str, names: tuple[str, ...]) -> sql.Composed:
    return sql.Composed([sql.SQL(template).format(col=sql.Identifier(name)) for name in names])


class _PostgresStore(Generic[T]):
    """JSONB document table with a compare-and-swap ``version`` column.

    Subclasses name their table, model and any extra indexed columns,
    which are denormalized from the document on every write.
    """

    table: str
    resource_type: str
    model: type
    columns: tuple[str, ...] = ()

    def __init__(self, cursor: CursorFactory = get_cursor) -> None:
        self._cursor = cursor
        self._table = sql.Identifier(self.table)

    def _column_values(self, aggregate: T) -> tuple[Any, ...]:
        return ()

    def _document(self, aggregate: T) -> dict[str, Any]:
        doc = aggregate.to_dict()
        doc.pop("version", None)
        return doc

    def _from_row(self, row: dict[str, Any]) -> T:
        return self.model.from_dict({**row["doc"], "version": row["version"]})

    def _select(self, where: str, params: tuple[Any, ...], order: str = "", limit: int | None = None) -> list[T]:
        query = sql.SQL("SELECT doc, version FROM {table} WHERE " + where).format(table=self._table)
        if order:
            query = query + sql.SQL(" ORDER BY " + order)
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params = (*params, limit)
        with self._cursor() as cur:
            cur.execute(query, params)
            return [self._from_row(row) for row in cur.fetchall()]

    def load(self, aggregate_id: str) -> T | None:
        rows = self._select("id = %s", (aggregate_id,))
        return rows[0] if rows else None

    def save(self, aggregate: T) -> T:
        doc = self._document(aggregate)
        extra = self._column_values(aggregate)
        if aggregate.version == 0:
            query = sql.SQL(
                "INSERT INTO {table} (id, version, doc{cols}) VALUES (%s, 1, %s{placeholders}) "
                "ON CONFLICT (id) DO NOTHING RETURNING version"
            ).format(
                table=self._table,
                cols=_comma_list(", {col}", self.columns),
                placeholders=sql.SQL(", %s" * len(self.columns)),
            )
            params = (aggregate.id, Json(doc), *extra)
        else:
            query = sql.SQL(
                "UPDATE {table} SET doc = %s, version = version + 1{assignments} "
                "WHERE id = %s AND version = %s RETURNING version"
            ).format(table=self._table, assignments=_comma_list(", {col} = %s", self.columns))
            params = (Json(doc), *extra, aggregate.id, aggregate.version)

        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        if row is None:
            raise ConflictError(self.resource_type, aggregate.id, aggregate.version)

        stored = copy.deepcopy(aggregate)
        stored.version = row["version"]
        return stored

    def delete(self, aggregate_id: str) -> bool:
        query = sql.SQL("DELETE FROM {table} WHERE id = %s RETURNING id").format(table=self._table)
        with self._cursor() as cur:
            cur.execute(query, (aggregate_id,))
            return cur.fetchone() is not None

    def restore(self, aggregate: T) -> None:
        query = sql.SQL(
            "INSERT INTO {table} AS t (id, version, doc{cols}) VALUES (%s, %s, %s{placeholders}) "
            "ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc, "
            "version = GREATEST(t.version + 1, EXCLUDED.version){excluded}"
        ).format(
            table=self._table,
            cols=_comma_list(", {col}", self.columns),
            placeholders=sql.SQL(", %s" * len(self.columns)),
            excluded=sql.Composed(
                [sql.SQL(", {col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in self.columns]
            ),
        )
        params = (aggregate.id, aggregate.version + 1, Json(self._document(aggregate)), *self._column_values(aggregate))
        with self._cursor() as cur:
            cur.execute(query, params)


class PostgresUserStore(_PostgresStore[User]):
    table = "parley_users"
    resource_type = "User"
    model = User

    def with_group(self, group_id: str) -> list[User]:
        return self._select("doc -> 'groups' ? %s", (group_id,))


class PostgresGroupStore(_PostgresStore[Group]):
    table = "parley_groups"
    resource_type = "Group"
    model = Group
    columns = ("created_at",)

    def _column_values(self, aggregate: Group) -> tuple[Any, ...]:
        return (aggregate.created_at,)

    def list_all(self) -> list[Group]:
        return self._select("TRUE", (), order="created_at DESC")


class PostgresMessageStore(_PostgresStore[Message]):
    table = "parley_messages"
    resource_type = "Message"
    model = Message
    columns = ("group_id", "timestamp", "deleted")

    def _column_values(self, aggregate: Message) -> tuple[Any, ...]:
        return (aggregate.group_id, aggregate.timestamp, aggregate.deleted)

    def in_range(
        self,
        group_id: str,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int = 50,
    ) -> list[Message]:
        where = "group_id = %s AND NOT deleted"
        params: tuple[Any, ...] = (group_id,)
        if before is not None:
            where += ' AND "timestamp" < %s'
            params += (before,)
        elif after is not None:
            where += ' AND "timestamp" > %s'
            params += (after,)
        return self._select(where, params, order='"timestamp" DESC, seq DESC', limit=limit)

    def recent(self, group_id: str, limit: int) -> list[Message]:
        return self._select(
            "group_id = %s AND NOT deleted", (group_id,), order='"timestamp" DESC, seq DESC', limit=limit
        )

    def delete_for_group(self, group_id: str) -> int:
        query = sql.SQL("DELETE FROM {table} WHERE group_id = %s").format(table=self._table)
        with self._cursor() as cur:
            cur.execute(query, (group_id,))
            return cur.rowcount


class PostgresRepository:
    """Repository backed by PostgreSQL through the shared connection pool.

    Args:
        cursor: Context-manager factory yielding a dict cursor; defaults to
            the pooled ``get_cursor``.
    """

    def __init__(self, cursor: CursorFactory = get_cursor) -> None:
        self.users = PostgresUserStore(cursor)
        self.groups = PostgresGroupStore(cursor)
        self.messages = PostgresMessageStore(cursor)
