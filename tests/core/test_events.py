"""Tests for parley.core.events - per-group event fan-out."""

from __future__ import annotations

import logging
import threading
import time

import pytest

from parley.core.clock import ManualClock
from parley.core.events import DomainEvent, EventBus, EventType


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(default_queue_size=8)


class TestSubscribe:
    def test_subscribe_and_count(self, event_bus):
        sub = event_bus.subscribe("g1")
        assert event_bus.subscriber_count("g1") == 1
        assert event_bus.subscriber_count("g2") == 0
        assert sub.channel == "g1"
        assert not sub.closed

    def test_invalid_queue_size(self, event_bus):
        with pytest.raises(ValueError):
            event_bus.subscribe("g1", max_queue=0)

    def test_close_detaches(self, event_bus):
        with event_bus.subscribe("g1") as sub:
            assert event_bus.subscriber_count("g1") == 1
        assert sub.closed
        assert event_bus.subscriber_count("g1") == 0

    def test_unsubscribe_twice_is_harmless(self, event_bus):
        sub = event_bus.subscribe("g1")
        event_bus.unsubscribe(sub)
        event_bus.unsubscribe(sub)
        assert event_bus.subscriber_count("g1") == 0


class TestChannelLifecycle:
    def test_closing_last_subscriber_discards_channel(self, event_bus):
        for i in range(1000):
            with event_bus.subscribe(f"g{i}"):
                pass
        assert event_bus.channel_count == 0

    def test_channel_kept_while_subscribed(self, event_bus):
        first = event_bus.subscribe("g1")
        second = event_bus.subscribe("g1")
        first.close()
        assert event_bus.channel_count == 1

        second.close()
        assert event_bus.channel_count == 0

    def test_dropping_last_subscriber_discards_channel(self, event_bus):
        event_bus.subscribe("g1", max_queue=1)
        event_bus.publish("g1", EventType.NEW_MESSAGE, {"n": 0})
        event_bus.publish("g1", EventType.NEW_MESSAGE, {"n": 1})

        assert event_bus.subscriber_count("g1") == 0
        assert event_bus.channel_count == 0

    def test_resubscribe_after_discard(self, event_bus):
        event_bus.subscribe("g1").close()
        sub = event_bus.subscribe("g1")

        assert event_bus.publish("g1", EventType.NEW_MESSAGE, {"id": "m1"}) == 1
        assert sub.get(timeout=0).sequence == 1


class TestPublishedAt:
    def test_stamped_from_clock(self):
        clock = ManualClock()
        bus = EventBus(clock=clock)
        sub = bus.subscribe("g1")

        clock.advance(hours=1000)
        bus.publish("g1", EventType.NEW_MESSAGE, {"id": "m1"})

        event = sub.get(timeout=0)
        assert event.published_at == clock.now()
        assert event.to_dict()["published_at"] == clock.now().isoformat()


class TestPublish:
    def test_publish_without_subscribers(self, event_bus):
        assert event_bus.publish("nobody", EventType.NEW_MESSAGE, {"id": "m1"}) == 0

    def test_delivers_to_channel_subscribers_only(self, event_bus):
        sub1 = event_bus.subscribe("g1")
        sub2 = event_bus.subscribe("g1")
        other = event_bus.subscribe("g2")

        delivered = event_bus.publish("g1", EventType.NEW_MESSAGE, {"id": "m1"})

        assert delivered == 2
        for sub in (sub1, sub2):
            event = sub.get(timeout=0)
            assert isinstance(event, DomainEvent)
            assert event.type == EventType.NEW_MESSAGE
            assert event.payload == {"id": "m1"}
            assert event.channel == "g1"
        assert other.get(timeout=0) is None

    def test_late_subscriber_sees_nothing(self, event_bus):
        event_bus.subscribe("g1")
        event_bus.publish("g1", EventType.NEW_MESSAGE, {"id": "m1"})

        late = event_bus.subscribe("g1")
        assert late.drain() == []

    def test_sequence_numbers_per_channel(self, event_bus):
        sub = event_bus.subscribe("g1")
        for i in range(3):
            event_bus.publish("g1", EventType.MESSAGE_EDITED, {"n": i})

        events = sub.drain()
        assert [e.sequence for e in events] == [1, 2, 3]
        assert [e.payload["n"] for e in events] == [0, 1, 2]

    def test_to_dict(self, event_bus):
        sub = event_bus.subscribe("g1")
        event_bus.publish("g1", EventType.MESSAGE_DELETED, {"id": "m1"})
        data = sub.get(timeout=0).to_dict()

        assert data["type"] == "message-deleted"
        assert data["channel"] == "g1"
        assert data["sequence"] == 1

    def test_event_type_wire_names(self):
        assert EventType.NEW_MESSAGE.value == "new-message"
        assert EventType.MESSAGES_ACKNOWLEDGED.value == "messages-acknowledged"


class TestBackPressure:
    def test_full_subscriber_is_dropped(self, event_bus, caplog):
        """A slow consumer is detached while the publisher carries on."""
        caplog.set_level(logging.WARNING, logger="parley.core.events")
        slow = event_bus.subscribe("g1", max_queue=2)
        fast = event_bus.subscribe("g1", max_queue=10)

        counts = [event_bus.publish("g1", EventType.NEW_MESSAGE, {"n": i}) for i in range(3)]

        assert counts == [2, 2, 1]
        assert slow.dropped and slow.closed
        assert event_bus.subscriber_count("g1") == 1
        assert [e.payload["n"] for e in slow.drain()] == [0, 1]
        assert len(fast.drain()) == 3
        assert "Dropped subscriber" in caplog.text

    def test_publish_never_blocks(self, event_bus):
        event_bus.subscribe("g1", max_queue=1)
        started = time.perf_counter()
        for i in range(100):
            event_bus.publish("g1", EventType.NEW_MESSAGE, {"n": i})
        assert time.perf_counter() - started < 1.0


class TestConcurrentPublish:
    def test_each_subscriber_sees_publish_order(self):
        bus = EventBus(default_queue_size=1000)
        subs = [bus.subscribe("g1") for _ in range(3)]

        def publisher(offset: int) -> None:
            for i in range(100):
                bus.publish("g1", EventType.NEW_MESSAGE, {"n": offset + i})

        threads = [threading.Thread(target=publisher, args=(k * 1000,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        orders = [[e.sequence for e in sub.drain()] for sub in subs]
        assert orders[0] == list(range(1, 401))
        assert orders[0] == orders[1] == orders[2]
