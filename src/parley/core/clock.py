# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Clock abstraction for time-windowed rules.

SystemClock: real wall-clock time
ManualClock: time that only moves when told to (tests, simulations)

The engines never call datetime.now() directly; edit windows and rejoin
cooldowns are evaluated against an injected clock.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Clock interface used by all time-dependent code."""

    def now(self) -> datetime:
        """Current time as timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Real wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """Deterministic clock. Time advances only when explicitly moved."""

    def __init__(self, start: datetime | None = None) -> None:
        self._time = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set(self, t: datetime) -> None:
        """Jump to an absolute time. Must not go backwards."""
        with self._lock:
            if t < self._time:
                raise ValueError(f"ManualClock cannot go backwards: {t} < {self._time}")
            self._time = t

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move forward by ``delta`` or by timedelta keyword arguments.

        Example:
            clock.advance(minutes=14, seconds=59)
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot go backwards")
        with self._lock:
            self._time = self._time + step
            return self._time
