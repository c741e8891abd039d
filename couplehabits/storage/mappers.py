"""Translation between local records and remote rows.

This module is the only place that knows the remote column names and the
remote timestamp encoding (ISO-8601 strings; local records use epoch
milliseconds). Every function is pure apart from reading the clock:
``*_from_remote`` falls back to "now" for a missing creation/record time and
``*_to_remote`` stamps ``updated_at`` at translation time.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Tuple

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
    iso_to_ms,
    ms_to_iso,
    now_ms,
)

Row = Dict[str, Any]


def _ms_or_now(value: Optional[str]) -> int:
    ms = iso_to_ms(value)
    return ms if ms is not None else now_ms()


def _iso_or_none(ms: Optional[int]) -> Optional[str]:
    return ms_to_iso(ms) if ms is not None else None


def _stamp() -> str:
    return ms_to_iso(now_ms())


# === Users ===


def user_from_remote(row: Mapping[str, Any]) -> User:
    gender = row.get("gender")
    return User(
        id=row["id"],
        email=row["email"],
        full_name=row.get("full_name") or "",
        display_name=row.get("display_name"),
        avatar_url=row.get("avatar_url"),
        gender=Gender(gender) if gender else None,
        date_of_birth=row.get("date_of_birth"),
        onboarding_completed=bool(row.get("onboarding_completed")),
        couple_id=row.get("couple_id") or None,
        created_at=_ms_or_now(row.get("created_at")),
    )


def user_to_remote(user: User) -> Row:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "gender": user.gender.value if user.gender else None,
        "date_of_birth": user.date_of_birth,
        "onboarding_completed": bool(user.onboarding_completed),
        "couple_id": user.couple_id,
        "created_at": ms_to_iso(user.created_at),
        "updated_at": _stamp(),
    }


# === Couples ===


def couple_from_remote(row: Mapping[str, Any]) -> Couple:
    return Couple(
        id=row["id"],
        user_a_id=row["user_a_id"],
        user_b_id=row.get("user_b_id") or None,
        status=CoupleStatus(row.get("status") or CoupleStatus.PENDING.value),
        code=row.get("code"),
        created_at=_ms_or_now(row.get("created_at")),
    )


def couple_to_remote(couple: Couple) -> Row:
    return {
        "id": couple.id,
        "user_a_id": couple.user_a_id,
        "user_b_id": couple.user_b_id,
        "status": CoupleStatus(couple.status).value,
        "code": couple.code,
        "created_at": ms_to_iso(couple.created_at),
        "updated_at": _stamp(),
    }


# === Goals ===


def goal_from_remote(row: Mapping[str, Any]) -> Goal:
    return Goal(
        id=row["id"],
        title=row["title"],
        description=row.get("description"),
        scope=GoalScope(row["scope"]),
        owner_user_id=row.get("owner_user_id"),
        couple_id=row.get("couple_id"),
        frequency=row.get("frequency") or "daily",
        tracking_type=TrackingType(row["tracking_type"]),
        target_value=row.get("target_value") or 1,
        created_at=_ms_or_now(row.get("created_at")),
        archived_at=iso_to_ms(row.get("archived_at")),
    )


def goal_to_remote(goal: Goal) -> Row:
    return {
        "id": goal.id,
        "title": goal.title,
        "description": goal.description,
        "scope": GoalScope(goal.scope).value,
        "owner_user_id": goal.owner_user_id,
        "couple_id": goal.couple_id,
        "frequency": goal.frequency,
        "tracking_type": TrackingType(goal.tracking_type).value,
        "target_value": goal.target_value,
        "created_at": ms_to_iso(goal.created_at),
        "updated_at": _stamp(),
        "archived_at": _iso_or_none(goal.archived_at),
    }


# === Progress ===


def progress_from_remote(row: Mapping[str, Any]) -> Progress:
    return Progress(
        id=row["id"],
        goal_id=row["goal_id"],
        date_key=row["date_key"],
        value=row.get("value") or 0,
        status=ProgressStatus(row["status"]),
        recorded_by_user_id=row.get("recorded_by_user_id"),
        recorded_at=_ms_or_now(row.get("recorded_at")),
        note=row.get("note"),
    )


def progress_to_remote(progress: Progress) -> Row:
    return {
        "id": progress.id,
        "goal_id": progress.goal_id,
        "date_key": progress.date_key,
        "value": progress.value,
        "status": ProgressStatus(progress.status).value,
        "recorded_by_user_id": progress.recorded_by_user_id,
        "recorded_at": ms_to_iso(progress.recorded_at),
        "note": progress.note,
        "updated_at": _stamp(),
    }


# === Table dispatch ===

MAPPERS: Dict[str, Tuple[Callable[[Mapping[str, Any]], Any], Callable[[Any], Row]]] = {
    "users": (user_from_remote, user_to_remote),
    "couples": (couple_from_remote, couple_to_remote),
    "goals": (goal_from_remote, goal_to_remote),
    "progress": (progress_from_remote, progress_to_remote),
}


def from_remote(table: str, row: Mapping[str, Any]) -> Any:
    """Translate a remote row from ``table`` into its local record."""
    if table not in MAPPERS:
        raise ValueError(f"No mapper for table {table!r}")
    return MAPPERS[table][0](row)


def to_remote(table: str, record: Any) -> Row:
    """Translate a local record into a row for remote ``table``."""
    if table not in MAPPERS:
        raise ValueError(f"No mapper for table {table!r}")
    return MAPPERS[table][1](record)
