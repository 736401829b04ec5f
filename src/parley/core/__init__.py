"""Parley Core - Membership, messaging and event fan-out."""

from .clock import Clock, ManualClock, SystemClock
from .config import CoreSettings, clear_config_cache, get_config
from .container import ParleyCore, create_core
from .cooldown import CooldownLedger
from .crypto import Corrupted, CryptoCodec, Decrypted, DecryptResult
from .events import DomainEvent, EventBus, EventType, Subscription
from .exceptions import (
    AlreadyDeletedError,
    AlreadyMemberError,
    AuthorizationError,
    BannedError,
    CapacityError,
    ConflictError,
    CooldownActiveError,
    EditWindowExpiredError,
    EmptyContentError,
    EmptyQueryError,
    ErrorCategory,
    ErrorKind,
    ForbiddenError,
    GroupFullError,
    GroupHasMembersError,
    InfrastructureError,
    InvalidArgumentError,
    InvariantViolation,
    LockTimeoutError,
    NotFoundError,
    NotMemberError,
    NotOwnerError,
    NotSenderError,
    OwnerCannotLeaveError,
    ParleyException,
    RepositoryUnavailableError,
    RequestAlreadyProcessedError,
    RequestPendingError,
    SelfBanError,
    StateConflictError,
    ValidationException,
)
from .locks import KeyedLocks
from .logging import configure_logging, get_logger, operation_scope
from .membership import MembershipEngine
from .messages import MessageStore
from .models import (
    Acknowledgement,
    Group,
    GroupSummary,
    GroupType,
    GroupView,
    JoinOutcome,
    JoinRequest,
    MembershipStatus,
    Message,
    MessagePage,
    MessageView,
    RequestStatus,
    SearchResult,
    User,
)
from .repository import InMemoryRepository, Repository, UnitOfWork

__all__ = [
    # Wiring
    "ParleyCore",
    "create_core",
    # Engines
    "MembershipEngine",
    "MessageStore",
    "CooldownLedger",
    "CryptoCodec",
    "Decrypted",
    "Corrupted",
    "DecryptResult",
    "EventBus",
    "EventType",
    "DomainEvent",
    "Subscription",
    "KeyedLocks",
    # Storage
    "Repository",
    "InMemoryRepository",
    "UnitOfWork",
    # Clock
    "Clock",
    "SystemClock",
    "ManualClock",
    # Config
    "CoreSettings",
    "get_config",
    "clear_config_cache",
    # Logging
    "configure_logging",
    "get_logger",
    "operation_scope",
    # Models
    "Group",
    "GroupType",
    "GroupSummary",
    "GroupView",
    "JoinOutcome",
    "JoinRequest",
    "RequestStatus",
    "MembershipStatus",
    "User",
    "Message",
    "MessageView",
    "MessagePage",
    "SearchResult",
    "Acknowledgement",
    # Exceptions
    "ErrorCategory",
    "ErrorKind",
    "ParleyException",
    "ValidationException",
    "InvalidArgumentError",
    "EmptyContentError",
    "EmptyQueryError",
    "NotFoundError",
    "AuthorizationError",
    "NotOwnerError",
    "NotSenderError",
    "NotMemberError",
    "ForbiddenError",
    "BannedError",
    "StateConflictError",
    "AlreadyMemberError",
    "AlreadyDeletedError",
    "RequestPendingError",
    "RequestAlreadyProcessedError",
    "OwnerCannotLeaveError",
    "GroupHasMembersError",
    "SelfBanError",
    "CapacityError",
    "GroupFullError",
    "CooldownActiveError",
    "EditWindowExpiredError",
    "InfrastructureError",
    "ConflictError",
    "RepositoryUnavailableError",
    "LockTimeoutError",
    "InvariantViolation",
]
