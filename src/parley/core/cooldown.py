# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Rejoin cooldown for private groups.

After leaving a private group a user must wait (48 hours by default) before
a new join request may be created. The ledger keeps exactly one last-left
timestamp per (user, group), stored in the User aggregate's ``left_groups``
map; leaving again overwrites it.

Two levels of API:
- id-based ``can_rejoin`` / ``record_leave`` for standalone callers
- aggregate-level ``is_cooling_down`` / ``remaining`` / ``stamp`` for the
  membership engine, which applies the rule inside its own unit of work
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .clock import Clock, SystemClock
from .locks import KeyedLocks, user_key
from .models import User
from .repository import UserStore, require

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=48)


class CooldownLedger:
    def __init__(
        self,
        users: UserStore,
        clock: Clock | None = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._users = users
        self._clock = clock or SystemClock()
        self._cooldown = cooldown
        self._locks = locks or KeyedLocks()

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    # -- aggregate level ---------------------------------------------------

    def remaining(self, user: User, group_id: str) -> timedelta:
        """Time left before ``user`` may rejoin; zero when allowed."""
        left_at = user.left_groups.get(group_id)
        if left_at is None:
            return timedelta(0)
        elapsed = self._clock.now() - left_at
        return max(self._cooldown - elapsed, timedelta(0))

    def is_cooling_down(self, user: User, group_id: str) -> bool:
        return self.remaining(user, group_id) > timedelta(0)

    def stamp(self, user: User, group_id: str, at: datetime | None = None) -> datetime:
        """Upsert the last-left timestamp on the aggregate (not persisted)."""
        left_at = at or self._clock.now()
        user.left_groups[group_id] = left_at
        return left_at

    # -- id level ----------------------------------------------------------

    def can_rejoin(self, user_id: str, group_id: str) -> bool:
        user = require(self._users, user_id)
        return not self.is_cooling_down(user, group_id)

    def record_leave(self, user_id: str, group_id: str, at: datetime | None = None) -> datetime:
        """Record that ``user_id`` left ``group_id`` and persist it."""
        with self._locks.hold(user_key(user_id)):
            user = require(self._users, user_id)
            left_at = self.stamp(user, group_id, at)
            self._users.save(user)
        logger.debug("Recorded leave of %s from %s at %s", user_id, group_id, left_at.isoformat())
        return left_at
