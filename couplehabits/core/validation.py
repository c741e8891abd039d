"""Entity validation for couplehabits.

Every use case validates the entity it is about to persist with one of
the ``validate_*`` functions below. They raise ``ValidationError`` and
never touch storage.

Lower-level helpers:
- ``sanitize_string``: string validation + control-char stripping
- ``sanitize_number``: numeric validation + NaN/Infinity rejection
"""

import logging
import math
import re
import uuid
from typing import Any, Optional

from couplehabits.protocols import ValidationError
from couplehabits.types import (
    Couple,
    CoupleStatus,
    Gender,
    Goal,
    GoalScope,
    Progress,
    ProgressStatus,
    TrackingType,
    User,
)

logger = logging.getLogger(__name__)

DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
URL_RE = re.compile(r"^https?://\S+$")

INVITE_CODE_LENGTH = 6
MAX_TITLE_LENGTH = 100
MAX_NOTE_LENGTH = 200


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> Optional[str]:
    """Sanitize and validate string inputs.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed string length.
        required: If True, None and empty strings are rejected.

    Returns:
        Sanitized string, or None for an absent optional value.

    Raises:
        ValidationError: If validation fails.
    """
    if value is None and not required:
        return None

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string, got {type(value).__name__}")

    if required and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} too long (max {max_length} characters, got {len(value)})"
        )

    # Remove null bytes and control characters except newlines and tabs
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def sanitize_number(value: Any, field_name: str, min_val: Optional[float] = None) -> float:
    """Validate numeric inputs, rejecting NaN and Infinity."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number, got {type(value).__name__}")

    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValidationError(f"{field_name} must be a finite number, got {value}")

    if min_val is not None and value < min_val:
        raise ValidationError(f"{field_name} must be >= {min_val}, got {value}")

    return value


def validate_id(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a UUID string")
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"{field_name} is not a valid UUID: {value!r}")
    return value


def validate_date_key(value: Any, field_name: str = "date_key") -> str:
    if not isinstance(value, str) or not DATE_KEY_RE.match(value):
        raise ValidationError(f"{field_name} must be YYYY-MM-DD, got {value!r}")
    return value


def _validate_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}")


def validate_user(user: User) -> User:
    validate_id(user.id, "id")
    if not isinstance(user.email, str) or not EMAIL_RE.match(user.email):
        raise ValidationError(f"Invalid email: {user.email!r}")
    user.full_name = sanitize_string(user.full_name, "full_name", max_length=200)
    user.display_name = sanitize_string(
        user.display_name, "display_name", max_length=100, required=False
    )
    if user.avatar_url is not None and not URL_RE.match(str(user.avatar_url)):
        raise ValidationError(f"avatar_url must be an http(s) URL, got {user.avatar_url!r}")
    if user.gender is not None:
        user.gender = _validate_enum(Gender, user.gender, "gender")
    if user.date_of_birth is not None:
        validate_date_key(user.date_of_birth, "date_of_birth")
    if user.couple_id is not None:
        validate_id(user.couple_id, "couple_id")
    user.onboarding_completed = bool(user.onboarding_completed)
    return user


def validate_couple(couple: Couple) -> Couple:
    validate_id(couple.id, "id")
    validate_id(couple.user_a_id, "user_a_id")
    couple.status = _validate_enum(CoupleStatus, couple.status, "status")
    if couple.user_b_id is not None:
        validate_id(couple.user_b_id, "user_b_id")
        if couple.user_b_id == couple.user_a_id:
            raise ValidationError("A user cannot be paired with themselves")
    if couple.code is not None and len(couple.code) != INVITE_CODE_LENGTH:
        raise ValidationError(f"Invite code must be exactly {INVITE_CODE_LENGTH} characters")
    # status is active iff the partner slot is filled
    if (couple.status == CoupleStatus.ACTIVE) != (couple.user_b_id is not None):
        raise ValidationError("Couple status must be active exactly when user_b_id is set")
    return couple


def validate_goal(goal: Goal) -> Goal:
    validate_id(goal.id, "id")
    goal.title = sanitize_string(goal.title, "title", max_length=MAX_TITLE_LENGTH)
    goal.description = sanitize_string(
        goal.description, "description", max_length=1000, required=False
    )
    goal.scope = _validate_enum(GoalScope, goal.scope, "scope")
    goal.tracking_type = _validate_enum(TrackingType, goal.tracking_type, "tracking_type")
    goal.frequency = sanitize_string(goal.frequency, "frequency", max_length=50)
    goal.target_value = sanitize_number(goal.target_value, "target_value", min_val=1)
    if goal.archived_at is not None:
        # Epoch milliseconds
        if not isinstance(goal.archived_at, int) or isinstance(goal.archived_at, bool):
            raise ValidationError(
                f"archived_at must be epoch milliseconds, got {type(goal.archived_at).__name__}"
            )
        sanitize_number(goal.archived_at, "archived_at", min_val=0)

    if goal.scope == GoalScope.PERSONAL:
        if not goal.owner_user_id or goal.couple_id:
            raise ValidationError("Personal goals need an owner and no couple")
        validate_id(goal.owner_user_id, "owner_user_id")
    else:
        if not goal.couple_id or goal.owner_user_id:
            raise ValidationError("Couple goals need a couple and no owner")
        validate_id(goal.couple_id, "couple_id")
    return goal


def validate_progress(progress: Progress) -> Progress:
    validate_id(progress.id, "id")
    validate_id(progress.goal_id, "goal_id")
    validate_date_key(progress.date_key)
    progress.value = sanitize_number(progress.value, "value", min_val=0)
    progress.status = _validate_enum(ProgressStatus, progress.status, "status")
    if progress.recorded_by_user_id is None:
        raise ValidationError("recorded_by_user_id is required")
    validate_id(progress.recorded_by_user_id, "recorded_by_user_id")
    progress.note = sanitize_string(
        progress.note, "note", max_length=MAX_NOTE_LENGTH, required=False
    )
    return progress
