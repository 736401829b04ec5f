# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Wiring for a ready-to-use Parley core.

``create_core()`` builds every collaborator from configuration and shares
one clock, one lock registry and one event bus between the engines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .clock import Clock, SystemClock
from .config import CoreSettings, get_config
from .cooldown import CooldownLedger
from .crypto import CryptoCodec
from .events import EventBus
from .exceptions import InvalidArgumentError
from .locks import KeyedLocks
from .membership import MembershipEngine
from .messages import MessageStore
from .repository import InMemoryRepository, Repository

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("memory", "postgres")


@dataclass
class ParleyCore:
    settings: CoreSettings
    repository: Repository
    clock: Clock
    locks: KeyedLocks
    bus: EventBus
    codec: CryptoCodec
    ledger: CooldownLedger
    membership: MembershipEngine
    messages: MessageStore


def _build_repository(settings: CoreSettings) -> Repository:
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryRepository()
    if backend == "postgres":
        # psycopg2 is only loaded for the postgres backend
        from .db import PostgresRepository, init_schema

        init_schema()
        return PostgresRepository()
    raise InvalidArgumentError(
        f"Storage backend must be one of: {', '.join(STORAGE_BACKENDS)}",
        field="storage_backend",
        value=settings.storage_backend,
    )


def create_core(
    settings: CoreSettings | None = None,
    repository: Repository | None = None,
    clock: Clock | None = None,
) -> ParleyCore:
    """Build a fully wired core.

    Args:
        settings: Configuration; the global config when omitted.
        repository: Storage to use instead of the configured backend.
        clock: Time source; the system clock when omitted.
    """
    settings = settings or get_config()
    repository = repository or _build_repository(settings)
    clock = clock or SystemClock()
    locks = KeyedLocks(settings.lock_timeout_seconds)
    bus = EventBus(settings.subscriber_queue_size, clock=clock)
    codec = CryptoCodec.from_secret(settings.encryption_key)
    ledger = CooldownLedger(repository.users, clock=clock, cooldown=settings.rejoin_cooldown, locks=locks)

    membership = MembershipEngine(
        repository, bus=bus, ledger=ledger, clock=clock, locks=locks, settings=settings
    )
    messages = MessageStore(
        repository, membership, codec=codec, bus=bus, clock=clock, locks=locks, settings=settings
    )

    logger.info("Parley core ready (storage=%s)", type(repository).__name__)
    return ParleyCore(
        settings=settings,
        repository=repository,
        clock=clock,
        locks=locks,
        bus=bus,
        codec=codec,
        ledger=ledger,
        membership=membership,
        messages=messages,
    )
