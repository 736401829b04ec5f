"""Tests for parley.core.container wiring."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from parley.core.clock import ManualClock, SystemClock
from parley.core.container import create_core
from parley.core.exceptions import InvalidArgumentError
from parley.core.models import GroupType
from parley.core.repository import InMemoryRepository


class TestCreateCore:
    def test_defaults_from_config(self, clean_env):
        core = create_core()

        assert isinstance(core.repository, InMemoryRepository)
        assert isinstance(core.clock, SystemClock)
        assert core.settings.storage_backend == "memory"

    def test_engines_share_collaborators(self, core):
        assert core.membership.bus is core.bus
        assert core.membership.locks is core.locks
        assert core.membership.clock is core.clock
        assert core.membership.ledger is core.ledger

    def test_settings_flow_into_collaborators(self, settings):
        custom = settings.model_copy(
            update={"rejoin_cooldown_hours": 2, "lock_timeout_seconds": 0.25}
        )
        core = create_core(settings=custom, clock=ManualClock())

        assert core.ledger.cooldown == timedelta(hours=2)
        assert core.locks.timeout == 0.25

    def test_unknown_backend_rejected(self, settings):
        with pytest.raises(InvalidArgumentError) as exc_info:
            create_core(settings=settings.model_copy(update={"storage_backend": "sqlite"}))
        assert exc_info.value.details["field"] == "storage_backend"

    @patch("parley.core.db.init_schema")
    def test_postgres_backend_applies_schema(self, mock_init_schema, settings):
        from parley.core.db import PostgresRepository

        core = create_core(settings=settings.model_copy(update={"storage_backend": "postgres"}))

        mock_init_schema.assert_called_once_with()
        assert isinstance(core.repository, PostgresRepository)

    def test_send_delivers_to_subscriber(self, core, owner):
        group = core.membership.create_group(owner.id, "General", GroupType.PUBLIC)

        with core.bus.subscribe(group.id) as sub:
            core.messages.send_message(group.id, owner.id, "hello")
            event = sub.get(timeout=1)

        assert event.payload["content"] == "hello"
        assert event.payload["group_id"] == group.id
        assert event.published_at == core.clock.now()
