# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Per-aggregate mutual exclusion.

``KeyedLocks`` hands out one lock per aggregate key (``group:<id>``,
``message:<id>``, ``user:<id>``). Keys passed to a single ``hold()`` are
acquired in a fixed global order (groups, then messages, then users; ids
sorted within a kind), so two operations can never deadlock on each other.
A lock taken while already holding others must come later in that order.

Every wait is bounded: a key that cannot be acquired within the timeout
releases everything taken so far and raises ``LockTimeoutError``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

_KIND_ORDER = {"group": 0, "message": 1, "user": 2}


def group_key(group_id: str) -> str:
    return f"group:{group_id}"


def message_key(message_id: str) -> str:
    return f"message:{message_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _order(key: str) -> tuple[int, str]:
    kind, _, ident = key.partition(":")
    return _KIND_ORDER.get(kind, len(_KIND_ORDER)), ident


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0  # threads holding or waiting


class KeyedLocks:
    """Registry of reference-counted locks keyed by aggregate.

    Entries are discarded once nobody holds or waits on them, so the
    registry stays proportional to in-flight operations.

    Args:
        timeout: Default upper bound, in seconds, on each acquisition.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._entries: dict[str, _Entry] = {}
        self._guard = threading.Lock()

    @property
    def timeout(self) -> float:
        return self._timeout

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Generator[None, None, None]:
        """Hold every lock in ``keys`` for the duration of the block."""
        wait = self._timeout if timeout is None else timeout
        ordered = sorted(set(keys), key=_order)
        acquired: list[tuple[str, _Entry]] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                if not entry.lock.acquire(timeout=wait):
                    self._checkin(key, entry)
                    logger.warning("Lock timeout on %s after %.2fs", key, wait)
                    raise LockTimeoutError(ordered, wait)
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)
