# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Custom exception hierarchy for Parley.

Every failure raised by the membership engine or the message store is a
``ParleyException`` carrying:

- ``kind``: the precise failure (``ErrorKind``)
- ``category``: validation, not-found, authorization, state-conflict,
  capacity, infrastructure or internal
- ``http_status``: the status code the surrounding HTTP layer should map to
- ``details``: the offending identifiers, for rendering user-facing messages
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Broad failure category."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    STATE_CONFLICT = "state_conflict"
    CAPACITY = "capacity"
    INFRASTRUCTURE = "infrastructure"
    INTERNAL = "internal"


class ErrorKind(str, Enum):
    """Precise failure kind."""

    INVALID_ARGUMENT = "invalid_argument"
    EMPTY_CONTENT = "empty_content"
    EMPTY_QUERY = "empty_query"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    NOT_SENDER = "not_sender"
    NOT_MEMBER = "not_member"
    FORBIDDEN = "forbidden"
    BANNED = "banned"
    ALREADY_MEMBER = "already_member"
    ALREADY_DELETED = "already_deleted"
    REQUEST_PENDING = "request_pending"
    REQUEST_ALREADY_PROCESSED = "request_already_processed"
    OWNER_CANNOT_LEAVE = "owner_cannot_leave"
    GROUP_HAS_MEMBERS = "group_has_members"
    SELF_BAN = "self_ban"
    GROUP_FULL = "group_full"
    COOLDOWN_ACTIVE = "cooldown_active"
    EDIT_WINDOW_EXPIRED = "edit_window_expired"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    LOCK_TIMEOUT = "lock_timeout"
    INVARIANT_VIOLATION = "invariant_violation"


class ParleyException(Exception):  # noqa: N818
    """Base exception for all Parley errors."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT
    category: ErrorCategory = ErrorCategory.VALIDATION
    http_status: int = 400

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationException(ParleyException):
    """Caller error in the request itself. Never retried by the core."""

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class InvalidArgumentError(ValidationException):
    kind = ErrorKind.INVALID_ARGUMENT


class EmptyContentError(ValidationException):
    kind = ErrorKind.EMPTY_CONTENT

    def __init__(self) -> None:
        super().__init__("Message content is required", field="content")


class EmptyQueryError(ValidationException):
    kind = ErrorKind.EMPTY_QUERY

    def __init__(self) -> None:
        super().__init__("Search query is required", field="query")


# =============================================================================
# NOT FOUND
# =============================================================================


class NotFoundError(ParleyException):
    """A Group, Message, User or JoinRequest does not exist."""

    kind = ErrorKind.NOT_FOUND
    category = ErrorCategory.NOT_FOUND
    http_status = 404

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


# =============================================================================
# AUTHORIZATION
# =============================================================================


class AuthorizationError(ParleyException):
    """The caller is not allowed to perform the operation."""

    category = ErrorCategory.AUTHORIZATION
    http_status = 403

    def __init__(self, message: str, user_id: str, **ids: str):
        super().__init__(message, {"user_id": user_id, **ids})
        self.user_id = user_id


class NotOwnerError(AuthorizationError):
    kind = ErrorKind.NOT_OWNER

    def __init__(self, group_id: str, user_id: str, action: str = "perform this action"):
        super().__init__(f"Only the group owner can {action}", user_id, group_id=group_id)
        self.group_id = group_id


class NotSenderError(AuthorizationError):
    kind = ErrorKind.NOT_SENDER

    def __init__(self, message_id: str, user_id: str):
        super().__init__("You can only edit your own messages", user_id, message_id=message_id)
        self.message_id = message_id


class NotMemberError(AuthorizationError):
    """The user (caller or target) is not a member of the group."""

    kind = ErrorKind.NOT_MEMBER

    def __init__(self, group_id: str, user_id: str, message: str | None = None):
        super().__init__(
            message or f"User {user_id} is not a member of group {group_id}",
            user_id,
            group_id=group_id,
        )
        self.group_id = group_id


class ForbiddenError(AuthorizationError):
    kind = ErrorKind.FORBIDDEN


class BannedError(AuthorizationError):
    kind = ErrorKind.BANNED

    def __init__(self, group_id: str, user_id: str):
        super().__init__("You have been banned from this group", user_id, group_id=group_id)
        self.group_id = group_id


# =============================================================================
# STATE CONFLICT
# =============================================================================


class StateConflictError(ParleyException):
    """Business-rule violation given the current aggregate state."""

    category = ErrorCategory.STATE_CONFLICT
    http_status = 409


class AlreadyMemberError(StateConflictError):
    kind = ErrorKind.ALREADY_MEMBER

    def __init__(self, group_id: str, user_id: str):
        super().__init__(
            "You are already a member of this group",
            {"group_id": group_id, "user_id": user_id},
        )


class AlreadyDeletedError(StateConflictError):
    kind = ErrorKind.ALREADY_DELETED

    def __init__(self, message_id: str):
        super().__init__("This message has already been deleted", {"message_id": message_id})
        self.message_id = message_id


class RequestPendingError(StateConflictError):
    kind = ErrorKind.REQUEST_PENDING

    def __init__(self, group_id: str, user_id: str):
        super().__init__(
            "You already have a pending join request for this group",
            {"group_id": group_id, "user_id": user_id},
        )


class RequestAlreadyProcessedError(StateConflictError):
    kind = ErrorKind.REQUEST_ALREADY_PROCESSED

    def __init__(self, group_id: str, request_id: str, status: str):
        super().__init__(
            f"Join request already {status}",
            {"group_id": group_id, "request_id": request_id, "status": status},
        )
        self.status = status


class OwnerCannotLeaveError(StateConflictError):
    kind = ErrorKind.OWNER_CANNOT_LEAVE

    def __init__(self, group_id: str, user_id: str):
        super().__init__(
            "You must transfer ownership before leaving the group",
            {"group_id": group_id, "user_id": user_id},
        )


class GroupHasMembersError(StateConflictError):
    kind = ErrorKind.GROUP_HAS_MEMBERS

    def __init__(self, group_id: str, member_count: int):
        super().__init__(
            "You must be the only member to delete the group",
            {"group_id": group_id, "member_count": member_count},
        )


class SelfBanError(StateConflictError):
    kind = ErrorKind.SELF_BAN

    def __init__(self, group_id: str, user_id: str):
        super().__init__(
            "The group owner cannot be banished",
            {"group_id": group_id, "user_id": user_id},
        )


# =============================================================================
# CAPACITY / TIME WINDOW
# =============================================================================


class CapacityError(ParleyException):
    """A capacity limit or time window forbids the operation right now."""

    category = ErrorCategory.CAPACITY
    http_status = 400


class GroupFullError(CapacityError):
    kind = ErrorKind.GROUP_FULL

    def __init__(self, group_id: str, max_members: int):
        super().__init__(
            "This group has reached its maximum member limit",
            {"group_id": group_id, "max_members": max_members},
        )
        self.max_members = max_members


class CooldownActiveError(CapacityError):
    kind = ErrorKind.COOLDOWN_ACTIVE
    http_status = 429

    def __init__(self, group_id: str, user_id: str, retry_after: timedelta):
        super().__init__(
            "You must wait after leaving before you can request to rejoin this private group",
            {
                "group_id": group_id,
                "user_id": user_id,
                "retry_after_seconds": int(retry_after.total_seconds()),
            },
        )
        self.retry_after = retry_after


class EditWindowExpiredError(CapacityError):
    kind = ErrorKind.EDIT_WINDOW_EXPIRED

    def __init__(self, message_id: str, window: timedelta):
        minutes = int(window.total_seconds() // 60)
        super().__init__(
            f"Messages can only be edited within {minutes} minutes of sending",
            {"message_id": message_id, "window_minutes": minutes},
        )
        self.message_id = message_id


# =============================================================================
# INFRASTRUCTURE
# =============================================================================


class InfrastructureError(ParleyException):
    """Failure of a collaborator. Callers may retry the whole operation."""

    category = ErrorCategory.INFRASTRUCTURE
    http_status = 503


class ConflictError(InfrastructureError):
    """Optimistic concurrency check failed: the aggregate version is stale."""

    kind = ErrorKind.CONFLICT
    http_status = 409

    def __init__(self, resource_type: str, resource_id: str, expected_version: int | None = None):
        details: dict[str, Any] = {"resource_type": resource_type, "resource_id": resource_id}
        if expected_version is not None:
            details["expected_version"] = expected_version
        super().__init__(f"{resource_type} {resource_id} was modified concurrently", details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class RepositoryUnavailableError(InfrastructureError):
    """Transient I/O failure in the storage collaborator."""

    kind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str, operation: str | None = None):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details)
        self.operation = operation


class LockTimeoutError(InfrastructureError):
    kind = ErrorKind.LOCK_TIMEOUT

    def __init__(self, keys: list[str], timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for {', '.join(keys)}",
            {"keys": keys, "timeout_seconds": timeout},
        )
        self.keys = keys


# =============================================================================
# INTERNAL
# =============================================================================


class InvariantViolation(ParleyException):  # noqa: N818
    """An aggregate invariant would be broken. Indicates a bug."""

    kind = ErrorKind.INVARIANT_VIOLATION
    category = ErrorCategory.INTERNAL
    http_status = 500

    def __init__(self, aggregate_id: str, violations: list[str]):
        super().__init__(
            f"Invariant violated on {aggregate_id}: {'; '.join(violations)}",
            {"aggregate_id": aggregate_id, "violations": violations},
        )
        self.violations = violations
