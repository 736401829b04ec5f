# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Encrypted message storage and retrieval.

Message bodies are encrypted before they reach the repository and decrypted
on the way out. A record that fails to decrypt never breaks a listing: it is
rendered with the fixed placeholder and skipped by search.

Deletion is soft. A deleted message keeps its ciphertext but is never
returned by list, search or edit again.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .clock import Clock
from .config import CoreSettings, get_config
from .crypto import CryptoCodec, DecryptResult
from .events import EventBus, EventType
from .exceptions import (
    AlreadyDeletedError,
    EditWindowExpiredError,
    EmptyContentError,
    EmptyQueryError,
    ForbiddenError,
    InvalidArgumentError,
    NotMemberError,
    NotSenderError,
)
from .locks import KeyedLocks, group_key, message_key
from .logging import operation_scope
from .membership import MembershipEngine
from .models import Acknowledgement, Message, MessagePage, MessageView, SearchResult
from .repository import Repository, require

logger = logging.getLogger(__name__)


def _clean_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise EmptyContentError()
    return content.strip()


def _coerce_time(value: datetime | str | None, field: str) -> datetime | None:
    """Accept a datetime or ISO-8601 string; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise InvalidArgumentError(f"{field} must be an ISO-8601 timestamp", field=field, value=value) from None
    if not isinstance(value, datetime):
        raise InvalidArgumentError(f"{field} must be a timestamp", field=field, value=value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


class MessageStore:
    """Send, list, edit, delete, search and acknowledge group messages.

    Membership checks are delegated to the ``MembershipEngine``, whose bus,
    clock and locks are shared unless given explicitly.
    """

    def __init__(
        self,
        repository: Repository,
        membership: MembershipEngine,
        codec: CryptoCodec | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        locks: KeyedLocks | None = None,
        settings: CoreSettings | None = None,
    ) -> None:
        settings = settings or get_config()
        self._repo = repository
        self._membership = membership
        self._codec = codec or CryptoCodec.from_secret(settings.encryption_key)
        self._bus = bus or membership.bus
        self._clock = clock or membership.clock
        self._locks = locks or membership.locks

        self._edit_window = settings.edit_window
        self._scan_limit = settings.search_scan_limit
        self._default_page_size = settings.default_page_size
        self._max_page_size = settings.max_page_size
        self._default_search_limit = settings.default_search_limit

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _view(self, message: Message, result: DecryptResult | None = None) -> MessageView:
        if result is None:
            result = self._codec.decrypt(message.ciphertext, message.iv)
        if not result.ok:
            logger.warning("Message %s could not be decrypted: %s", message.id, result.reason)
        return MessageView(
            id=message.id,
            group_id=message.group_id,
            sender_id=message.sender_id,
            content=result.text,
            timestamp=message.timestamp,
            edited=message.edited,
            edited_at=message.edited_at,
            corrupted=not result.ok,
        )

    def _check_limit(self, limit: Any, default: int) -> int:
        if limit is None:
            return default
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self._max_page_size:
            raise InvalidArgumentError(
                f"Limit must be between 1 and {self._max_page_size}", field="limit", value=limit
            )
        return limit

    def _require_member(self, group_id: str, user_id: str, action: str) -> None:
        if not self._membership.is_member(group_id, user_id):
            raise NotMemberError(group_id, user_id, f"You must be a member to {action}")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def send_message(self, group_id: str, sender_id: str, content: str) -> MessageView:
        """Encrypt and store a message, then broadcast it to the group."""
        with operation_scope("send_message", group_id=group_id, sender_id=sender_id, content=content):
            text = _clean_content(content)
            # The group lock keeps a send from racing a ban or a group delete
            with self._locks.hold(group_key(group_id)):
                self._require_member(group_id, sender_id, "send messages")
                ciphertext, iv = self._codec.encrypt(text)
                message = Message(
                    group_id=group_id,
                    sender_id=sender_id,
                    ciphertext=ciphertext,
                    iv=iv,
                    timestamp=self._clock.now(),
                )
                saved = self._repo.messages.save(message)
                view = self._view(saved)
                self._bus.publish(group_id, EventType.NEW_MESSAGE, view.to_dict())

            logger.info("Message %s sent to group %s by %s", saved.id, group_id, sender_id)
            return view

    def list_messages(
        self,
        group_id: str,
        requester_id: str,
        limit: int | None = None,
        before: datetime | str | None = None,
        after: datetime | str | None = None,
    ) -> MessagePage:
        """One page of a group's history in chronological order.

        ``before`` takes precedence over ``after`` when both are given.
        ``has_more`` is true when the page is full, which may over-report on
        the last page.
        """
        with operation_scope("list_messages", group_id=group_id, requester_id=requester_id, limit=limit):
            limit = self._check_limit(limit, self._default_page_size)
            before = _coerce_time(before, "before")
            after = _coerce_time(after, "after")
            self._require_member(group_id, requester_id, "view messages")

            newest_first = self._repo.messages.in_range(group_id, before=before, after=after, limit=limit)
            views = [self._view(m) for m in reversed(newest_first)]
            return MessagePage(messages=views, has_more=len(newest_first) == limit)

    def edit_message(self, message_id: str, user_id: str, content: str) -> MessageView:
        """Replace a message body. Sender only, within the edit window of the original send."""
        with operation_scope("edit_message", message_id=message_id, user_id=user_id, content=content):
            text = _clean_content(content)
            with self._locks.hold(message_key(message_id)):
                message = require(self._repo.messages, message_id)
                if message.deleted:
                    raise AlreadyDeletedError(message_id)
                if message.sender_id != user_id:
                    raise NotSenderError(message_id, user_id)
                now = self._clock.now()
                if now - message.timestamp > self._edit_window:
                    raise EditWindowExpiredError(message_id, self._edit_window)

                message.ciphertext, message.iv = self._codec.encrypt(text)
                message.edited = True
                message.edited_at = now
                saved = self._repo.messages.save(message)
                view = self._view(saved)
                self._bus.publish(saved.group_id, EventType.MESSAGE_EDITED, view.to_dict())

            logger.info("Message %s edited by %s", message_id, user_id)
            return view

    def delete_message(self, message_id: str, user_id: str) -> None:
        """Soft-delete a message. Allowed for its sender and the group owner."""
        with operation_scope("delete_message", message_id=message_id, user_id=user_id):
            with self._locks.hold(message_key(message_id)):
                message = require(self._repo.messages, message_id)
                if message.deleted:
                    raise AlreadyDeletedError(message_id)
                if message.sender_id != user_id and self._membership.group_owner(message.group_id) != user_id:
                    raise ForbiddenError(
                        "You can only delete your own messages", user_id, message_id=message_id
                    )

                now = self._clock.now()
                message.deleted = True
                message.deleted_at = now
                self._repo.messages.save(message)
                self._bus.publish(
                    message.group_id,
                    EventType.MESSAGE_DELETED,
                    {
                        "id": message_id,
                        "group_id": message.group_id,
                        "deleted_by": user_id,
                        "deleted_at": now.isoformat(),
                    },
                )

            logger.info("Message %s deleted by %s", message_id, user_id)

    def search_messages(
        self,
        group_id: str,
        requester_id: str,
        query: str,
        limit: int | None = None,
    ) -> SearchResult:
        """Case-insensitive substring search over the most recent messages.

        Only the newest ``search_scan_limit`` non-deleted messages are
        scanned, newest first; older matches are not found. Records that fail
        to decrypt never match.
        """
        with operation_scope("search_messages", group_id=group_id, requester_id=requester_id, query=query):
            if not isinstance(query, str) or not query.strip():
                raise EmptyQueryError()
            limit = self._check_limit(limit, self._default_search_limit)
            self._require_member(group_id, requester_id, "search messages")

            needle = query.lower()
            results: list[MessageView] = []
            for message in self._repo.messages.recent(group_id, self._scan_limit):
                decrypted = self._codec.decrypt(message.ciphertext, message.iv)
                if not decrypted.ok or needle not in decrypted.plaintext.lower():
                    continue
                results.append(self._view(message, decrypted))
                if len(results) >= limit:
                    break

            logger.debug("Search in %s matched %d messages", group_id, len(results))
            return SearchResult(results=results, query=query)

    def acknowledge_messages(self, group_id: str, user_id: str, message_ids: list[str]) -> Acknowledgement:
        """Broadcast a read receipt. Nothing is stored."""
        with operation_scope("acknowledge_messages", group_id=group_id, user_id=user_id):
            if (
                not isinstance(message_ids, (list, tuple))
                or not message_ids
                or not all(isinstance(mid, str) and mid.strip() for mid in message_ids)
            ):
                raise InvalidArgumentError("Message IDs array is required", field="message_ids")
            self._require_member(group_id, user_id, "acknowledge messages")

            ack = Acknowledgement(
                group_id=group_id,
                user_id=user_id,
                message_ids=list(message_ids),
                timestamp=self._clock.now(),
            )
            self._bus.publish(group_id, EventType.MESSAGES_ACKNOWLEDGED, ack.to_dict())
            return ack
