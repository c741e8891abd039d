"""
Shared record types for couplehabits.

All entity dataclasses live here. They are the vocabulary shared by the
local store, the mappers, the outbox and the use cases. Timestamps are
epoch milliseconds on the local side; the mappers own the translation to
the remote representation.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .protocols import ValidationError

# === Shared Utility Functions ===

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def ms_to_iso(ms: int) -> str:
    """Encode epoch milliseconds as an ISO-8601 UTC string."""
    return (_EPOCH + timedelta(milliseconds=ms)).isoformat()


def iso_to_ms(s: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601 string into epoch milliseconds.

    Returns None for empty input. Naive timestamps are treated as UTC.
    """
    if not s:
        return None
    parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (parsed - _EPOCH) // timedelta(milliseconds=1)


# === Enums ===


class Gender(str, Enum):
    FEMALE = "female"
    MALE = "male"
    NON_BINARY = "non_binary"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"
    OTHER = "other"


class CoupleStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class GoalScope(str, Enum):
    PERSONAL = "personal"
    COUPLE = "couple"


class TrackingType(str, Enum):
    BOOLEAN = "boolean"
    COUNT = "count"


class ProgressStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    MISSED = "missed"


class ActionType(str, Enum):
    """Kinds of mutation that travel through the outbox."""

    CREATE_GOAL = "CREATE_GOAL"
    UPDATE_GOAL = "UPDATE_GOAL"
    TRACK_PROGRESS = "TRACK_PROGRESS"
    JOIN_COUPLE = "JOIN_COUPLE"
    CREATE_USER_PROFILE = "CREATE_USER_PROFILE"


class ActionStatus(str, Enum):
    """Outbox action status.

    Only PENDING is ever stored: a delivered action is removed from the
    outbox and a failed one stays pending with a higher retry count.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    SYNCED = "synced"


# === Entities ===


@dataclass
class User:
    """A user profile."""

    id: str
    email: str
    full_name: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    gender: Optional[Gender] = None
    date_of_birth: Optional[str] = None  # YYYY-MM-DD
    onboarding_completed: bool = False
    couple_id: Optional[str] = None
    created_at: int = 0


@dataclass
class Couple:
    """A pairing of two users. Pending until the partner joins by code."""

    id: str
    user_a_id: str
    user_b_id: Optional[str] = None
    status: CoupleStatus = CoupleStatus.PENDING
    code: Optional[str] = None
    created_at: int = 0

    def partner_of(self, user_id: str) -> Optional[str]:
        """Return the member that is not ``user_id``, if any."""
        if self.user_a_id == user_id:
            return self.user_b_id
        if self.user_b_id == user_id:
            return self.user_a_id
        return None


@dataclass
class Goal:
    """A personal or couple goal.

    Exactly one of owner_user_id / couple_id is set, matching scope.
    """

    id: str
    title: str
    scope: GoalScope
    frequency: str
    tracking_type: TrackingType
    target_value: float = 1
    description: Optional[str] = None
    owner_user_id: Optional[str] = None
    couple_id: Optional[str] = None
    created_at: int = 0
    archived_at: Optional[int] = None


@dataclass
class Progress:
    """One tracking entry per (goal, date, recorder)."""

    id: str
    goal_id: str
    date_key: str  # YYYY-MM-DD
    value: float
    status: ProgressStatus
    recorded_by_user_id: Optional[str]
    recorded_at: int = 0
    note: Optional[str] = None


Entity = Union[User, Couple, Goal, Progress]

# Concrete payload type carried by each action type
ACTION_PAYLOAD_TYPES: Dict[ActionType, type] = {
    ActionType.CREATE_GOAL: Goal,
    ActionType.UPDATE_GOAL: Goal,
    ActionType.TRACK_PROGRESS: Progress,
    ActionType.JOIN_COUPLE: Couple,
    ActionType.CREATE_USER_PROFILE: User,
}

# Remote table each action type is delivered to
ACTION_TABLES: Dict[ActionType, str] = {
    ActionType.CREATE_GOAL: "goals",
    ActionType.UPDATE_GOAL: "goals",
    ActionType.TRACK_PROGRESS: "progress",
    ActionType.JOIN_COUPLE: "couples",
    ActionType.CREATE_USER_PROFILE: "users",
}


@dataclass
class SyncAction:
    """A pending mutation in the outbox.

    The payload type is fixed by action_type (see ACTION_PAYLOAD_TYPES);
    a mismatch is rejected at construction time.
    """

    id: str
    action_type: ActionType
    payload: Entity
    created_at: int
    status: ActionStatus = ActionStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[int] = None

    def __post_init__(self):
        try:
            self.action_type = ActionType(self.action_type)
        except ValueError:
            raise ValidationError(f"Unknown action type: {self.action_type!r}")
        self.status = ActionStatus(self.status)
        expected = ACTION_PAYLOAD_TYPES[self.action_type]
        if not isinstance(self.payload, expected):
            raise ValidationError(
                f"{self.action_type.value} expects a {expected.__name__} payload, "
                f"got {type(self.payload).__name__}"
            )

    @classmethod
    def create(cls, action_type: Union[ActionType, str], payload: Entity) -> "SyncAction":
        return cls(
            id=new_id(),
            action_type=action_type,
            payload=payload,
            created_at=now_ms(),
        )

    @property
    def table(self) -> str:
        return ACTION_TABLES[self.action_type]


@dataclass
class SyncResult:
    """Result of a drain or pull."""

    pushed: int = 0  # Actions delivered to the remote store
    pulled: int = 0  # Remote rows written to the local store
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "pulled": self.pulled,
            "errors": list(self.errors),
            "success": self.success,
        }
