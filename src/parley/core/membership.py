# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Group membership state machine.

Owns the Group aggregate's lifecycle: creation, public joins, the private
join-request workflow, leaving (with the rejoin cooldown), ownership
transfer, permanent bans and deletion.

Every mutating operation:
1. takes the per-aggregate locks it needs (group first, then users)
2. validates against freshly loaded state
3. writes the Group, then the User(s), inside a ``UnitOfWork``
4. publishes ``MembershipChanged`` on the group's channel

Group.members is authoritative; User.groups is a denormalized index kept in
step within the same unit of work.
"""

from __future__ import annotations

import logging
from typing import Any

from .clock import Clock, SystemClock
from .config import CoreSettings, get_config
from .cooldown import CooldownLedger
from .events import EventBus, EventType
from .exceptions import (
    AlreadyMemberError,
    BannedError,
    CooldownActiveError,
    ForbiddenError,
    GroupFullError,
    GroupHasMembersError,
    InvalidArgumentError,
    NotFoundError,
    NotMemberError,
    NotOwnerError,
    OwnerCannotLeaveError,
    RequestAlreadyProcessedError,
    RequestPendingError,
    SelfBanError,
)
from .locks import KeyedLocks, group_key, user_key
from .logging import operation_scope
from .models import (
    MAX_GROUP_NAME_LENGTH,
    Group,
    GroupSummary,
    GroupType,
    GroupView,
    JoinOutcome,
    JoinRequest,
    MembershipStatus,
    RequestStatus,
    User,
    UserBan,
    new_id,
)
from .repository import Repository, UnitOfWork, require

logger = logging.getLogger(__name__)

MEMBERSHIP_FILTERS = ("joined", "available")


def _parse_group_type(value: Any) -> GroupType:
    try:
        return GroupType(value)
    except ValueError:
        raise InvalidArgumentError("Type must be either public or private", field="type", value=value) from None


class MembershipEngine:
    """Membership operations over the Group and User aggregates.

    Args:
        repository: Storage for users, groups and messages.
        bus: Event fan-out; a private bus is created when omitted.
        ledger: Rejoin cooldown ledger; built over ``repository.users``
            when omitted.
        clock: Time source for timestamps and the cooldown rule.
        locks: Per-aggregate lock registry, shared with the message store.
        settings: Configuration; the global config when omitted.
    """

    def __init__(
        self,
        repository: Repository,
        bus: EventBus | None = None,
        ledger: CooldownLedger | None = None,
        clock: Clock | None = None,
        locks: KeyedLocks | None = None,
        settings: CoreSettings | None = None,
    ) -> None:
        settings = settings or get_config()
        self._repo = repository
        self._clock = clock or SystemClock()
        self._bus = bus or EventBus(settings.subscriber_queue_size, clock=self._clock)
        self._locks = locks or KeyedLocks(settings.lock_timeout_seconds)
        self._ledger = ledger or CooldownLedger(
            repository.users,
            clock=self._clock,
            cooldown=settings.rejoin_cooldown,
            locks=self._locks,
        )

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    @property
    def ledger(self) -> CooldownLedger:
        return self._ledger

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _save_group(self, group: Group, uow: UnitOfWork | None = None) -> Group:
        group.updated_at = self._clock.now()
        group.assert_invariants()
        if uow is None:
            return self._repo.groups.save(group)
        return uow.save(self._repo.groups, group)

    def _publish(self, group_id: str, action: str, **payload: Any) -> None:
        self._bus.publish(
            group_id,
            EventType.MEMBERSHIP_CHANGED,
            {"action": action, "group_id": group_id, **payload},
        )

    def _require_owner(self, group: Group, user_id: str, action: str) -> None:
        if not group.is_owner(user_id):
            raise NotOwnerError(group.id, user_id, action)

    # =========================================================================
    # USERS
    # =========================================================================

    def register_user(self, username: str, credential: str | None = None, user_id: str | None = None) -> User:
        """Create the User record a verified identity acts through.

        The credential is stored opaquely; verifying it is the identity
        service's job.
        """
        with operation_scope("register_user", username=username, credential=credential):
            if not isinstance(username, str) or not username.strip():
                raise InvalidArgumentError("Username is required", field="username")
            user = User(
                id=user_id or new_id(),
                username=username.strip(),
                credential=credential,
                created_at=self._clock.now(),
            )
            saved = self._repo.users.save(user)
            logger.info("Registered user %s", saved.id)
            return saved

    # =========================================================================
    # GROUP LIFECYCLE
    # =========================================================================

    def create_group(
        self,
        owner_id: str,
        name: str,
        group_type: GroupType | str,
        max_members: int | None = None,
    ) -> Group:
        """Create a group with ``owner_id`` as its sole member."""
        with operation_scope("create_group", owner_id=owner_id, name=name, type=group_type):
            if not isinstance(name, str) or not name.strip():
                raise InvalidArgumentError("Name is required", field="name")
            name = name.strip()
            if len(name) > MAX_GROUP_NAME_LENGTH:
                raise InvalidArgumentError(
                    f"Name must be at most {MAX_GROUP_NAME_LENGTH} characters", field="name", value=len(name)
                )
            kind = _parse_group_type(group_type)
            if max_members is not None and (
                isinstance(max_members, bool) or not isinstance(max_members, int) or max_members < 2
            ):
                raise InvalidArgumentError(
                    "Maximum members must be at least 2", field="max_members", value=max_members
                )

            with self._locks.hold(user_key(owner_id)):
                owner = require(self._repo.users, owner_id)
                now = self._clock.now()
                group = Group(
                    name=name,
                    type=kind,
                    owner_id=owner_id,
                    members=[owner_id],
                    max_members=max_members,
                    created_at=now,
                    updated_at=now,
                )
                with UnitOfWork() as uow:
                    group = self._save_group(group, uow)
                    owner.groups.add(group.id)
                    uow.save(self._repo.users, owner)

                self._publish(group.id, "group_created", user_id=owner_id, name=group.name, type=kind.value)

            logger.info("Group created: %s (%s) by user %s", group.id, kind.value, owner_id)
            return group

    def delete_group(self, group_id: str, user_id: str) -> None:
        """Delete a group the caller owns and is the only member of.

        Cascades: every message of the group is removed and the group id is
        stripped from every User record still referencing it.
        """
        with operation_scope("delete_group", group_id=group_id, user_id=user_id):
            with self._locks.hold(group_key(group_id)):
                group = require(self._repo.groups, group_id)
                self._require_owner(group, user_id, "delete the group")
                if group.member_count > 1:
                    raise GroupHasMembersError(group_id, group.member_count)

                referencing = [u.id for u in self._repo.users.with_group(group_id)]
                with self._locks.hold(*(user_key(uid) for uid in referencing)):
                    with UnitOfWork() as uow:
                        uow.delete(self._repo.groups, group_id)
                        for uid in referencing:
                            user = self._repo.users.load(uid)
                            if user is None or group_id not in user.groups:
                                continue
                            user.groups.discard(group_id)
                            uow.save(self._repo.users, user)
                        removed = self._repo.messages.delete_for_group(group_id)

                self._publish(group_id, "group_deleted", user_id=user_id)

            logger.info("Group %s deleted by owner %s (%d messages removed)", group_id, user_id, removed)

    def transfer_ownership(self, group_id: str, user_id: str, new_owner_id: str) -> Group:
        """Hand ownership to another member; the old owner stays a member."""
        with operation_scope("transfer_ownership", group_id=group_id, user_id=user_id, new_owner_id=new_owner_id):
            with self._locks.hold(group_key(group_id)):
                group = require(self._repo.groups, group_id)
                self._require_owner(group, user_id, "transfer ownership")
                if not group.is_member(new_owner_id):
                    raise NotMemberError(group_id, new_owner_id, "New owner must be a member of the group")

                group.owner_id = new_owner_id
                group = self._save_group(group)
                self._publish(group_id, "ownership_transferred", user_id=user_id, new_owner_id=new_owner_id)

            logger.info("Group %s ownership transferred from %s to %s", group_id, user_id, new_owner_id)
            return group

    # =========================================================================
    # JOIN / LEAVE
    # =========================================================================

    def join_group(self, group_id: str, user_id: str) -> JoinOutcome:
        """Join a public group, or file a join request for a private one."""
        with operation_scope("join_group", group_id=group_id, user_id=user_id):
            with self._locks.hold(group_key(group_id), user_key(user_id)):
                group = require(self._repo.groups, group_id)
                user = require(self._repo.users, user_id)

                if group.is_member(user_id):
                    raise AlreadyMemberError(group_id, user_id)
                if group.is_banned(user_id) or user.is_banned_from(group_id):
                    raise BannedError(group_id, user_id)
                if group.is_full():
                    raise GroupFullError(group_id, group.max_members)

                if group.type == GroupType.PUBLIC:
                    group.add_member(user_id)
                    with UnitOfWork() as uow:
                        group = self._save_group(group, uow)
                        user.groups.add(group_id)
                        uow.save(self._repo.users, user)
                    self._publish(group_id, "joined", user_id=user_id, member_count=group.member_count)
                    logger.info("User %s joined public group %s", user_id, group_id)
                    return JoinOutcome(group_id=group_id, user_id=user_id, status="joined")

                if self._ledger.is_cooling_down(user, group_id):
                    raise CooldownActiveError(group_id, user_id, self._ledger.remaining(user, group_id))
                if group.has_pending_request(user_id):
                    raise RequestPendingError(group_id, user_id)

                request = JoinRequest(user_id=user_id, requested_at=self._clock.now())
                group.join_requests.append(request)
                self._save_group(group)
                self._publish(group_id, "request_created", user_id=user_id, request_id=request.id)

            logger.info("User %s requested to join private group %s", user_id, group_id)
            return JoinOutcome(group_id=group_id, user_id=user_id, status="pending", request_id=request.id)

    def leave_group(self, group_id: str, user_id: str) -> None:
        """Leave a group. Leaving a private group starts the rejoin cooldown."""
        with operation_scope("leave_group", group_id=group_id, user_id=user_id):
            with self._locks.hold(group_key(group_id), user_key(user_id)):
                group = require(self._repo.groups, group_id)
                if not group.is_member(user_id):
                    raise NotMemberError(group_id, user_id, "You are not a member of this group")
                if group.is_owner(user_id):
                    raise OwnerCannotLeaveError(group_id, user_id)
                user = require(self._repo.users, user_id)

                group.remove_member(user_id)
                with UnitOfWork() as uow:
                    group = self._save_group(group, uow)
                    user.groups.discard(group_id)
                    if group.type == GroupType.PRIVATE:
                        self._ledger.stamp(user, group_id, self._clock.now())
                    uow.save(self._repo.users, user)

                self._publish(group_id, "left", user_id=user_id, member_count=group.member_count)

            logger.info("User %s left group %s", user_id, group_id)

    def banish_user(self, group_id: str, user_id: str, target_user_id: str) -> None:
        """Remove a member and ban them permanently."""
        with operation_scope("banish_user", group_id=group_id, user_id=user_id, target_user_id=target_user_id):
            with self._locks.hold(group_key(group_id), user_key(target_user_id)):
                group = require(self._repo.groups, group_id)
                self._require_owner(group, user_id, "banish members")
                if target_user_id == group.owner_id:
                    raise SelfBanError(group_id, target_user_id)
                if not group.is_member(target_user_id):
                    raise NotMemberError(group_id, target_user_id, "User is not a member of this group")
                target = require(self._repo.users, target_user_id)

                now = self._clock.now()
                group.ban(target_user_id, banned_by=user_id, at=now)
                with UnitOfWork() as uow:
                    group = self._save_group(group, uow)
                    target.groups.discard(group_id)
                    target.banned_groups.append(UserBan(group_id=group_id, banned_at=now))
                    uow.save(self._repo.users, target)

                self._publish(group_id, "banned", user_id=target_user_id, banned_by=user_id)

            logger.info("User %s banished from group %s by %s", target_user_id, group_id, user_id)

    # =========================================================================
    # JOIN REQUESTS
    # =========================================================================

    def _pending_request(self, group: Group, request_id: str) -> JoinRequest:
        request = group.find_request(request_id)
        if request is None:
            raise NotFoundError("JoinRequest", request_id)
        if not request.is_pending:
            raise RequestAlreadyProcessedError(group.id, request_id, request.status.value)
        return request

    def list_join_requests(self, group_id: str, user_id: str) -> list[JoinRequest]:
        """Pending requests in the order they were filed. Owner only."""
        with operation_scope("list_join_requests", group_id=group_id, user_id=user_id):
            group = require(self._repo.groups, group_id)
            self._require_owner(group, user_id, "view join requests")
            return group.pending_requests()

    def approve_join_request(self, group_id: str, user_id: str, request_id: str) -> JoinRequest:
        """Admit the requestor. Capacity is checked now, not at request time."""
        with operation_scope("approve_join_request", group_id=group_id, user_id=user_id, request_id=request_id):
            with self._locks.hold(group_key(group_id)):
                group = require(self._repo.groups, group_id)
                self._require_owner(group, user_id, "approve requests")
                request = self._pending_request(group, request_id)
                if group.is_full():
                    raise GroupFullError(group_id, group.max_members)

                with self._locks.hold(user_key(request.user_id)):
                    requestor = require(self._repo.users, request.user_id)
                    request.status = RequestStatus.APPROVED
                    request.processed_at = self._clock.now()
                    request.processed_by = user_id
                    group.add_member(request.user_id)
                    with UnitOfWork() as uow:
                        group = self._save_group(group, uow)
                        requestor.groups.add(group_id)
                        uow.save(self._repo.users, requestor)

                self._publish(
                    group_id,
                    "request_approved",
                    user_id=request.user_id,
                    request_id=request_id,
                    member_count=group.member_count,
                )

            logger.info("Join request %s approved for user %s in group %s", request_id, request.user_id, group_id)
            return request

    def decline_join_request(self, group_id: str, user_id: str, request_id: str) -> JoinRequest:
        with operation_scope("decline_join_request", group_id=group_id, user_id=user_id, request_id=request_id):
            with self._locks.hold(group_key(group_id)):
                group = require(self._repo.groups, group_id)
                self._require_owner(group, user_id, "decline requests")
                request = self._pending_request(group, request_id)

                request.status = RequestStatus.DECLINED
                request.processed_at = self._clock.now()
                request.processed_by = user_id
                self._save_group(group)
                self._publish(group_id, "request_declined", user_id=request.user_id, request_id=request_id)

            logger.info("Join request %s declined for user %s in group %s", request_id, request.user_id, group_id)
            return request

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_group(self, group_id: str, requester_id: str) -> GroupView:
        """Group details. Private groups are visible to members only."""
        with operation_scope("get_group", group_id=group_id, requester_id=requester_id):
            group = require(self._repo.groups, group_id)
            if group.type == GroupType.PRIVATE and not group.is_member(requester_id):
                raise ForbiddenError(
                    "You must be a member to view this private group", requester_id, group_id=group_id
                )
            return GroupView.of(group, requester_id)

    def list_groups(
        self,
        requester_id: str,
        group_type: GroupType | str | None = None,
        membership: str | None = None,
    ) -> list[GroupSummary]:
        """List groups, newest first.

        Args:
            requester_id: The caller; drives ``is_member`` and the filters.
            group_type: Only groups of this type.
            membership: ``"joined"`` for the caller's groups, ``"available"``
                for public groups plus the caller's groups.
        """
        with operation_scope("list_groups", requester_id=requester_id, type=group_type, membership=membership):
            kind = _parse_group_type(group_type) if group_type is not None else None
            if membership is not None and membership not in MEMBERSHIP_FILTERS:
                raise InvalidArgumentError(
                    "Membership filter must be 'joined' or 'available'", field="membership", value=membership
                )

            groups = self._repo.groups.list_all()
            if kind is not None:
                groups = [g for g in groups if g.type == kind]
            if membership == "joined":
                groups = [g for g in groups if g.is_member(requester_id)]
            elif membership == "available":
                groups = [g for g in groups if g.type == GroupType.PUBLIC or g.is_member(requester_id)]
            return [GroupSummary.of(g, requester_id) for g in groups]

    def is_member(self, group_id: str, user_id: str) -> bool:
        return require(self._repo.groups, group_id).is_member(user_id)

    def is_banned(self, group_id: str, user_id: str) -> bool:
        return require(self._repo.groups, group_id).is_banned(user_id)

    def has_pending_request(self, group_id: str, user_id: str) -> bool:
        return require(self._repo.groups, group_id).has_pending_request(user_id)

    def membership_status(self, group_id: str, user_id: str) -> MembershipStatus:
        return require(self._repo.groups, group_id).membership_status(user_id)

    def group_owner(self, group_id: str) -> str | None:
        """Owner of a group, or None if the group no longer exists."""
        group = self._repo.groups.load(group_id)
        return group.owner_id if group is not None else None
