# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Repository contract, in-memory implementation and unit of work.

The engines only see the ``Repository`` protocol: one store per aggregate
type offering ``load`` / ``save`` / ``delete`` / ``restore`` plus the few
queries the core needs. ``save`` is optimistic: the aggregate's ``version``
must match the stored one or ``ConflictError`` is raised.

``UnitOfWork`` wraps the paired writes of a cross-aggregate operation. Each
write records the prior snapshot; if a later write fails, earlier ones are
compensated in reverse order so no half-applied state survives.

Usage:
    with UnitOfWork() as uow:
        group = uow.save(repo.groups, group)
        user = uow.save(repo.users, user)  # failure here reverts the group
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

from .exceptions import ConflictError, NotFoundError
from .models import Group, Message, User

logger = logging.getLogger(__name__)

T = TypeVar("T", Group, User, Message)


# =============================================================================
# CONTRACT
# =============================================================================


class AggregateStore(Protocol[T]):
    """Storage for one aggregate type."""

    resource_type: str

    def load(self, aggregate_id: str) -> T | None:
        ...

    def save(self, aggregate: T) -> T:
        """Persist and return the stored copy carrying its new version."""
        ...

    def delete(self, aggregate_id: str) -> bool:
        ...

    def restore(self, aggregate: T) -> None:
        """Unconditionally write a snapshot back. Compensation only."""
        ...


class GroupStore(AggregateStore[Group], Protocol):
    def list_all(self) -> list[Group]:
        """All groups, newest first."""
        ...


class UserStore(AggregateStore[User], Protocol):
    def with_group(self, group_id: str) -> list[User]:
        """Users whose joined-groups index references ``group_id``."""
        ...


class MessageStoreBackend(AggregateStore[Message], Protocol):
    def in_range(
        self,
        group_id: str,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int = 50,
    ) -> list[Message]:
        """Non-deleted messages, newest first; ``before`` wins over ``after``."""
        ...

    def recent(self, group_id: str, limit: int) -> list[Message]:
        """The most recent ``limit`` non-deleted messages, newest first."""
        ...

    def delete_for_group(self, group_id: str) -> int:
        ...


class Repository(Protocol):
    users: UserStore
    groups: GroupStore
    messages: MessageStoreBackend


def require(store: AggregateStore[T], aggregate_id: str) -> T:
    """Load an aggregate or raise ``NotFoundError``."""
    aggregate = store.load(aggregate_id)
    if aggregate is None:
        raise NotFoundError(store.resource_type, aggregate_id)
    return aggregate


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================


class _MemoryStore(Generic[T]):
    """Thread-safe dict-backed store.

    Aggregates are deep-copied on the way in and out so callers can never
    mutate stored state without going through ``save``.
    """

    def __init__(self, resource_type: str) -> None:
        self.resource_type = resource_type
        self._items: dict[str, T] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def load(self, aggregate_id: str) -> T | None:
        with self._lock:
            item = self._items.get(aggregate_id)
            return copy.deepcopy(item) if item is not None else None

    def save(self, aggregate: T) -> T:
        with self._lock:
            current = self._items.get(aggregate.id)
            current_version = current.version if current is not None else 0
            if aggregate.version != current_version:
                raise ConflictError(self.resource_type, aggregate.id, aggregate.version)
            stored = copy.deepcopy(aggregate)
            stored.version = current_version + 1
            self._write(stored)
            return copy.deepcopy(stored)

    def delete(self, aggregate_id: str) -> bool:
        with self._lock:
            return self._items.pop(aggregate_id, None) is not None

    def restore(self, aggregate: T) -> None:
        with self._lock:
            current = self._items.get(aggregate.id)
            stored = copy.deepcopy(aggregate)
            # Bump past whatever is stored so holders of the reverted
            # version cannot save over the restored snapshot.
            stored.version = max(aggregate.version, current.version if current else 0) + 1
            self._write(stored)

    def _write(self, stored: T) -> None:
        self._items[stored.id] = stored

    def _snapshot(self) -> list[T]:
        with self._lock:
            return list(self._items.values())


class MemoryGroupStore(_MemoryStore[Group]):
    def __init__(self) -> None:
        super().__init__("Group")

    def list_all(self) -> list[Group]:
        groups = sorted(self._snapshot(), key=lambda g: g.created_at, reverse=True)
        return [copy.deepcopy(g) for g in groups]


class MemoryUserStore(_MemoryStore[User]):
    def __init__(self) -> None:
        super().__init__("User")

    def with_group(self, group_id: str) -> list[User]:
        return [copy.deepcopy(u) for u in self._snapshot() if group_id in u.groups]


class MemoryMessageStore(_MemoryStore[Message]):
    """Message store keeping insertion order to break timestamp ties."""

    def __init__(self) -> None:
        super().__init__("Message")
        self._sequence = itertools.count(1)
        self._order: dict[str, int] = {}

    def _write(self, stored: Message) -> None:
        if stored.id not in self._order:
            self._order[stored.id] = next(self._sequence)
        super()._write(stored)

    def delete(self, aggregate_id: str) -> bool:
        with self._lock:
            self._order.pop(aggregate_id, None)
            return super().delete(aggregate_id)

    def _live_newest_first(self, group_id: str) -> list[Message]:
        with self._lock:
            live = [m for m in self._items.values() if m.group_id == group_id and not m.deleted]
            live.sort(key=lambda m: (m.timestamp, self._order[m.id]), reverse=True)
            return live

    def in_range(
        self,
        group_id: str,
        before: datetime | None = None,
        after: datetime | None = None,
        limit: int = 50,
    ) -> list[Message]:
        messages = self._live_newest_first(group_id)
        if before is not None:
            messages = [m for m in messages if m.timestamp < before]
        elif after is not None:
            messages = [m for m in messages if m.timestamp > after]
        return [copy.deepcopy(m) for m in messages[:limit]]

    def recent(self, group_id: str, limit: int) -> list[Message]:
        return [copy.deepcopy(m) for m in self._live_newest_first(group_id)[:limit]]

    def delete_for_group(self, group_id: str) -> int:
        with self._lock:
            doomed = [mid for mid, m in self._items.items() if m.group_id == group_id]
            for mid in doomed:
                self.delete(mid)
            return len(doomed)


class InMemoryRepository:
    """Process-local repository. The default backend and the test double."""

    def __init__(self) -> None:
        self.users = MemoryUserStore()
        self.groups = MemoryGroupStore()
        self.messages = MemoryMessageStore()


# =============================================================================
# UNIT OF WORK
# =============================================================================


class UnitOfWork:
    """Compensating transactional unit for multi-aggregate writes.

    Not a database transaction: each write commits on its own, and a failure
    later in the unit restores the snapshots taken before earlier writes.
    """

    def __init__(self) -> None:
        self._undo: list[tuple[AggregateStore[Any], str, Any]] = []
        self.committed = False

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.rollback()
        else:
            self.committed = True
        return False

    def save(self, store: AggregateStore[T], aggregate: T) -> T:
        previous = store.load(aggregate.id)
        saved = store.save(aggregate)
        self._undo.append((store, aggregate.id, previous))
        return saved

    def delete(self, store: AggregateStore[T], aggregate_id: str) -> bool:
        previous = store.load(aggregate_id)
        removed = store.delete(aggregate_id)
        if removed:
            self._undo.append((store, aggregate_id, previous))
        return removed

    def rollback(self) -> None:
        """Revert every recorded write, newest first."""
        while self._undo:
            store, aggregate_id, previous = self._undo.pop()
            try:
                if previous is None:
                    store.delete(aggregate_id)
                else:
                    store.restore(previous)
                logger.info("Compensated %s %s", store.resource_type, aggregate_id)
            except Exception:
                # Keep unwinding; the original failure still propagates.
                logger.exception("Compensation failed for %s %s", store.resource_type, aggregate_id)
