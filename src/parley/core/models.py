# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Aggregates and read views for Parley.

Three aggregates, each its own consistency boundary:

- ``Group``: authoritative membership roster, join requests and bans
- ``User``: denormalized index of joined groups, ban records and the
  last-left timestamps backing the rejoin cooldown
- ``Message``: encrypted body plus edit/delete flags

Every aggregate carries a ``version`` for the repository's optimistic
concurrency check and round-trips through ``to_dict()`` / ``from_dict()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .exceptions import InvariantViolation

MAX_GROUP_NAME_LENGTH = 100


def new_id() -> str:
    """Generate a UUID for aggregate records."""
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# ENUMS
# =============================================================================


class GroupType(str, Enum):
    """Visibility and admission policy of a group."""

    PUBLIC = "public"  # Anyone not banned may join directly
    PRIVATE = "private"  # Joining goes through an owner-approved request


class RequestStatus(str, Enum):
    """Status of a join request. Leaves PENDING exactly once."""

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class MembershipStatus(str, Enum):
    """Tagged state of one (user, group) pair."""

    ACTIVE = "active"
    BANNED = "banned"
    NONE = "none"


# =============================================================================
# GROUP
# =============================================================================


@dataclass
class JoinRequest:
    """A pending ask to join a private group."""

    user_id: str
    id: str = field(default_factory=new_id)
    requested_at: datetime = field(default_factory=_utcnow)
    status: RequestStatus = RequestStatus.PENDING
    processed_at: datetime | None = None
    processed_by: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "requested_at": self.requested_at.isoformat(),
            "status": self.status.value,
            "processed_at": _iso(self.processed_at),
            "processed_by": self.processed_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JoinRequest:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            requested_at=_parse(data["requested_at"]),
            status=RequestStatus(data.get("status", "pending")),
            processed_at=_parse(data.get("processed_at")),
            processed_by=data.get("processed_by"),
        )


@dataclass
class GroupBan:
    """Permanent ban record kept on the group."""

    user_id: str
    banned_by: str
    banned_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "banned_by": self.banned_by,
            "banned_at": self.banned_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupBan:
        return cls(
            user_id=data["user_id"],
            banned_by=data["banned_by"],
            banned_at=_parse(data["banned_at"]),
        )


@dataclass
class Group:
    """The Group aggregate. ``members`` is the source of truth for membership."""

    name: str
    type: GroupType
    owner_id: str
    id: str = field(default_factory=new_id)
    members: list[str] = field(default_factory=list)
    max_members: int | None = None
    join_requests: list[JoinRequest] = field(default_factory=list)
    banned_users: list[GroupBan] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 0

    def __post_init__(self) -> None:
        if self.owner_id not in self.members:
            self.members.insert(0, self.owner_id)

    # -- predicates --------------------------------------------------------

    def is_member(self, user_id: str) -> bool:
        return user_id in self.members

    def is_owner(self, user_id: str) -> bool:
        return self.owner_id == user_id

    def is_banned(self, user_id: str) -> bool:
        return any(ban.user_id == user_id for ban in self.banned_users)

    def has_pending_request(self, user_id: str) -> bool:
        return any(req.user_id == user_id and req.is_pending for req in self.join_requests)

    def is_full(self) -> bool:
        return self.max_members is not None and len(self.members) >= self.max_members

    def membership_status(self, user_id: str) -> MembershipStatus:
        if self.is_banned(user_id):
            return MembershipStatus.BANNED
        if self.is_member(user_id):
            return MembershipStatus.ACTIVE
        return MembershipStatus.NONE

    def find_request(self, request_id: str) -> JoinRequest | None:
        for req in self.join_requests:
            if req.id == request_id:
                return req
        return None

    def pending_requests(self) -> list[JoinRequest]:
        return [req for req in self.join_requests if req.is_pending]

    @property
    def member_count(self) -> int:
        return len(self.members)

    # -- mutations ---------------------------------------------------------

    def add_member(self, user_id: str) -> None:
        if user_id not in self.members:
            self.members.append(user_id)

    def remove_member(self, user_id: str) -> None:
        self.members = [m for m in self.members if m != user_id]

    def ban(self, user_id: str, banned_by: str, at: datetime) -> GroupBan:
        self.remove_member(user_id)
        record = GroupBan(user_id=user_id, banned_by=banned_by, banned_at=at)
        self.banned_users.append(record)
        return record

    # -- invariants --------------------------------------------------------

    def invariant_violations(self) -> list[str]:
        """Return a description of every broken membership invariant."""
        problems = []
        if self.owner_id not in self.members:
            problems.append(f"owner {self.owner_id} is not a member")
        if self.max_members is not None and len(self.members) > self.max_members:
            problems.append(f"{len(self.members)} members exceeds max of {self.max_members}")
        if len(set(self.members)) != len(self.members):
            problems.append("duplicate member entries")
        banned_members = sorted({ban.user_id for ban in self.banned_users} & set(self.members))
        if banned_members:
            problems.append(f"banned users still members: {', '.join(banned_members)}")
        pending_users = [req.user_id for req in self.join_requests if req.is_pending]
        if len(set(pending_users)) != len(pending_users):
            problems.append("more than one pending request for a user")
        return problems

    def assert_invariants(self) -> None:
        problems = self.invariant_violations()
        if problems:
            raise InvariantViolation(self.id, problems)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "owner_id": self.owner_id,
            "members": list(self.members),
            "max_members": self.max_members,
            "join_requests": [req.to_dict() for req in self.join_requests],
            "banned_users": [ban.to_dict() for ban in self.banned_users],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Group:
        return cls(
            id=data["id"],
            name=data["name"],
            type=GroupType(data["type"]),
            owner_id=data["owner_id"],
            members=list(data.get("members", [])),
            max_members=data.get("max_members"),
            join_requests=[JoinRequest.from_dict(r) for r in data.get("join_requests", [])],
            banned_users=[GroupBan.from_dict(b) for b in data.get("banned_users", [])],
            created_at=_parse(data["created_at"]),
            updated_at=_parse(data.get("updated_at") or data["created_at"]),
            version=data.get("version", 0),
        )


# =============================================================================
# USER
# =============================================================================


@dataclass
class UserBan:
    """Ban record kept on the banned user."""

    group_id: str
    banned_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"group_id": self.group_id, "banned_at": self.banned_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserBan:
        return cls(group_id=data["group_id"], banned_at=_parse(data["banned_at"]))


@dataclass
class User:
    """The User aggregate.

    ``groups`` mirrors Group.members and is maintained in the same unit of
    work; ``left_groups`` holds exactly one last-left timestamp per group.
    """

    username: str
    id: str = field(default_factory=new_id)
    credential: str | None = field(default=None, repr=False)
    groups: set[str] = field(default_factory=set)
    banned_groups: list[UserBan] = field(default_factory=list)
    left_groups: dict[str, datetime] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    version: int = 0

    def is_banned_from(self, group_id: str) -> bool:
        return any(ban.group_id == group_id for ban in self.banned_groups)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "credential": self.credential,
            "groups": sorted(self.groups),
            "banned_groups": [ban.to_dict() for ban in self.banned_groups],
            "left_groups": {gid: at.isoformat() for gid, at in self.left_groups.items()},
            "created_at": self.created_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        return cls(
            id=data["id"],
            username=data["username"],
            credential=data.get("credential"),
            groups=set(data.get("groups", [])),
            banned_groups=[UserBan.from_dict(b) for b in data.get("banned_groups", [])],
            left_groups={gid: _parse(at) for gid, at in data.get("left_groups", {}).items()},
            created_at=_parse(data["created_at"]),
            version=data.get("version", 0),
        )


# =============================================================================
# MESSAGE
# =============================================================================


@dataclass
class Message:
    """The Message aggregate. Content is only ever held encrypted."""

    group_id: str
    sender_id: str
    ciphertext: str
    iv: str
    timestamp: datetime
    id: str = field(default_factory=new_id)
    edited: bool = False
    edited_at: datetime | None = None
    deleted: bool = False
    deleted_at: datetime | None = None
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "sender_id": self.sender_id,
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "timestamp": self.timestamp.isoformat(),
            "edited": self.edited,
            "edited_at": _iso(self.edited_at),
            "deleted": self.deleted,
            "deleted_at": _iso(self.deleted_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            group_id=data["group_id"],
            sender_id=data["sender_id"],
            ciphertext=data["ciphertext"],
            iv=data["iv"],
            timestamp=_parse(data["timestamp"]),
            edited=data.get("edited", False),
            edited_at=_parse(data.get("edited_at")),
            deleted=data.get("deleted", False),
            deleted_at=_parse(data.get("deleted_at")),
            version=data.get("version", 0),
        )


# =============================================================================
# READ VIEWS
# =============================================================================


@dataclass
class MessageView:
    """Decrypted, caller-facing view of a non-deleted message."""

    id: str
    group_id: str
    sender_id: str
    content: str
    timestamp: datetime
    edited: bool = False
    edited_at: datetime | None = None
    corrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "edited": self.edited,
            "edited_at": _iso(self.edited_at),
        }


@dataclass
class MessagePage:
    messages: list[MessageView]
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {"messages": [m.to_dict() for m in self.messages], "has_more": self.has_more}


@dataclass
class SearchResult:
    results: list[MessageView]
    query: str

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [m.to_dict() for m in self.results],
            "query": self.query,
            "count": self.count,
        }


@dataclass
class Acknowledgement:
    group_id: str
    user_id: str
    message_ids: list[str]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "message_ids": list(self.message_ids),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class JoinOutcome:
    """Result of a join: immediate membership (public) or a pending request."""

    group_id: str
    user_id: str
    status: str  # "joined" or "pending"
    request_id: str | None = None

    @property
    def joined(self) -> bool:
        return self.status == "joined"

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "user_id": self.user_id,
            "status": self.status,
            "request_id": self.request_id,
        }


@dataclass
class GroupSummary:
    """One row of a group listing."""

    id: str
    name: str
    type: GroupType
    owner_id: str
    member_count: int
    max_members: int | None
    is_member: bool
    created_at: datetime

    @classmethod
    def of(cls, group: Group, requester_id: str) -> GroupSummary:
        return cls(
            id=group.id,
            name=group.name,
            type=group.type,
            owner_id=group.owner_id,
            member_count=group.member_count,
            max_members=group.max_members,
            is_member=group.is_member(requester_id),
            created_at=group.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "owner_id": self.owner_id,
            "member_count": self.member_count,
            "max_members": self.max_members,
            "is_member": self.is_member,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class GroupView:
    """Group details as seen by one requester."""

    id: str
    name: str
    type: GroupType
    owner_id: str
    members: list[str]
    max_members: int | None
    is_member: bool
    is_owner: bool
    join_requests: list[JoinRequest]
    created_at: datetime

    @classmethod
    def of(cls, group: Group, requester_id: str) -> GroupView:
        is_owner = group.is_owner(requester_id)
        return cls(
            id=group.id,
            name=group.name,
            type=group.type,
            owner_id=group.owner_id,
            members=list(group.members),
            max_members=group.max_members,
            is_member=group.is_member(requester_id),
            is_owner=is_owner,
            # Only the owner sees the request queue
            join_requests=list(group.join_requests) if is_owner else [],
            created_at=group.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "owner_id": self.owner_id,
            "members": list(self.members),
            "max_members": self.max_members,
            "is_member": self.is_member,
            "is_owner": self.is_owner,
            "join_requests": [req.to_dict() for req in self.join_requests],
            "created_at": self.created_at.isoformat(),
        }
