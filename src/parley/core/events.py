# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Best-effort, per-group-ordered event fan-out.

An in-memory publish/subscribe registry keyed by group channel. Nothing is
persisted or replayed: a subscriber only sees events published while it is
attached.

Ordering: publishes on one channel are serialized, and each event carries
that channel's next sequence number, so every subscriber of the channel
receives events in publish order. No ordering holds across channels.

Back-pressure never reaches the publisher: each subscriber has a bounded
queue, enqueueing is non-blocking, and a subscriber whose queue is full is
dropped on the spot.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class EventType(str, Enum):
    """Domain events published to group channels."""

    NEW_MESSAGE = "new-message"
    MESSAGE_EDITED = "message-edited"
    MESSAGE_DELETED = "message-deleted"
    MEMBERSHIP_CHANGED = "membership-changed"
    MESSAGES_ACKNOWLEDGED = "messages-acknowledged"


@dataclass(frozen=True)
class DomainEvent:
    channel: str
    type: EventType
    payload: dict[str, Any]
    sequence: int
    published_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "type": self.type.value,
            "payload": self.payload,
            "sequence": self.sequence,
            "published_at": self.published_at.isoformat(),
        }


class Subscription:
    """A live subscriber attached to one channel."""

    def __init__(self, bus: EventBus, channel: str, max_queue: int) -> None:
        self.id = str(uuid4())
        self.channel = channel
        self._bus = bus
        self._queue: queue.Queue[DomainEvent] = queue.Queue(maxsize=max_queue)
        self.closed = False
        self.dropped = False

    def _offer(self, event: DomainEvent) -> bool:
        """Enqueue without blocking. False means the queue is full."""
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: float | None = None) -> DomainEvent | None:
        """Next event, or None if none arrives within ``timeout`` seconds.

        Events queued before the subscription was dropped or closed can
        still be read.
        """
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[DomainEvent]:
        """Every event currently queued, oldest first."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class _Channel:
    __slots__ = ("lock", "sequence", "subscribers")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.sequence = 0
        self.subscribers: list[Subscription] = []


class EventBus:
    """In-memory fan-out registry keyed by group channel.

    A channel exists only while it has subscribers; the last one leaving
    discards it, sequence counter included.

    Args:
        default_queue_size: Per-subscriber buffer used when ``subscribe``
            is not given an explicit size.
        clock: Source of ``published_at``; the system clock when omitted.
    """

    def __init__(self, default_queue_size: int = DEFAULT_QUEUE_SIZE, clock: Clock | None = None) -> None:
        self._default_queue_size = default_queue_size
        self._clock = clock or SystemClock()
        self._channels: dict[str, _Channel] = {}
        # Lock order: registry lock, then a channel's lock
        self._lock = threading.Lock()

    def _discard_if_empty(self, channel: str) -> None:
        with self._lock:
            state = self._channels.get(channel)
            if state is None:
                return
            with state.lock:
                if not state.subscribers:
                    del self._channels[channel]

    def subscribe(self, channel: str, max_queue: int | None = None) -> Subscription:
        size = max_queue if max_queue is not None else self._default_queue_size
        if size < 1:
            raise ValueError("Subscriber queue size must be at least 1")
        subscription = Subscription(self, channel, size)
        with self._lock:
            state = self._channels.get(channel)
            if state is None:
                state = self._channels[channel] = _Channel()
            with state.lock:
                state.subscribers.append(subscription)
        logger.debug("Subscriber %s attached to %s", subscription.id, channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            state = self._channels.get(subscription.channel)
            if state is not None:
                with state.lock:
                    if subscription in state.subscribers:
                        state.subscribers.remove(subscription)
                    if not state.subscribers:
                        del self._channels[subscription.channel]
        subscription.closed = True

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            state = self._channels.get(channel)
            if state is None:
                return 0
            with state.lock:
                return len(state.subscribers)

    @property
    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def publish(self, channel: str, event_type: EventType, payload: dict[str, Any]) -> int:
        """Broadcast to the channel's current subscribers.

        Returns:
            Number of subscribers the event was queued for.
        """
        with self._lock:
            state = self._channels.get(channel)
        if state is None:
            return 0

        delivered = 0
        with state.lock:
            state.sequence += 1
            event = DomainEvent(
                channel=channel,
                type=event_type,
                payload=payload,
                sequence=state.sequence,
                published_at=self._clock.now(),
            )
            for subscription in list(state.subscribers):
                if subscription._offer(event):
                    delivered += 1
                    continue
                # Slow consumer: detach rather than stall the publisher
                state.subscribers.remove(subscription)
                subscription.dropped = True
                subscription.closed = True
                logger.warning(
                    "Dropped subscriber %s on %s: queue full at sequence %d",
                    subscription.id,
                    channel,
                    event.sequence,
                )
            emptied = not state.subscribers

        if emptied:
            self._discard_if_empty(channel)
        logger.debug("Published %s to %s (%d subscribers)", event_type.value, channel, delivered)
        return delivered
