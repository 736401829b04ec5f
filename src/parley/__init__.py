# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Parley - Group messaging core.

Parley manages groups, their membership and the encrypted messages exchanged
inside them, and fans domain events out to whatever delivery layer sits on
top (websockets, HTTP long-poll, queues).

Architecture:
  Membership Engine (groups, join requests, bans, cooldowns)
    → Message Store (encrypt, store, list, search, edit, soft-delete)
    → Event Bus (per-group channels, bounded subscriber queues)
  all over a Repository (in-memory or PostgreSQL).

Key design principles:
  - Group.members is authoritative; the per-user group index is kept in step
    inside the same unit of work.
  - Per-aggregate locks make every check-then-act atomic.
  - Message bodies are only ever stored encrypted (AES-256-GCM).
  - Publishing never blocks on a slow subscriber.

Entry point: ``parley.core.create_core()``
"""

__version__ = "1.0.0"

from . import (
    core as core,
)
