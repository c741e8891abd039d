"""Progress tracking.

One Progress row exists per (goal, date, recorder). Tracking the same day
again rewrites that row in place, keeping its id, so a couple goal ends
up with at most one row per partner per day.
"""

import logging
from typing import Optional

from couplehabits.storage.sqlite import SQLiteStore
from couplehabits.storage.sync_engine import SyncEngine
from couplehabits.types import (
    ActionType,
    Goal,
    Progress,
    ProgressStatus,
    TrackingType,
    new_id,
    now_ms,
)

from .goals import load_goal_for_user
from .validation import sanitize_number, validate_date_key, validate_progress

logger = logging.getLogger(__name__)


def calculate_status(goal: Goal, value: float) -> ProgressStatus:
    """Derive a progress status from the goal's tracking type.

    Boolean goals are completed by any positive value and missed otherwise.
    Count goals are completed once the target is reached, partial below it.
    """
    if goal.tracking_type == TrackingType.BOOLEAN:
        return ProgressStatus.COMPLETED if value > 0 else ProgressStatus.MISSED
    return ProgressStatus.COMPLETED if value >= goal.target_value else ProgressStatus.PARTIAL


class TrackProgress:
    """Record a user's value for a goal on a day."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(
        self,
        goal_id: str,
        user_id: str,
        date_key: str,
        value: float,
        note: Optional[str] = None,
    ) -> Progress:
        """Track progress, creating or updating the user's row for the day.

        Raises:
            NotFoundError: If the goal does not exist locally.
            AuthorizationError: If the user may not track this goal.
            ValidationError: If the date, value or note is invalid.
        """
        goal = load_goal_for_user(self._store, goal_id, user_id)
        validate_date_key(date_key)
        value = sanitize_number(value, "value", min_val=0)

        existing = next(
            (
                p
                for p in self._store.get_progress_for_day(goal_id, date_key)
                if p.recorded_by_user_id == user_id
            ),
            None,
        )

        progress = Progress(
            id=existing.id if existing else new_id(),
            goal_id=goal_id,
            date_key=date_key,
            value=value,
            status=calculate_status(goal, value),
            recorded_by_user_id=user_id,
            recorded_at=now_ms(),
            note=note,
        )
        validate_progress(progress)

        self._store.save_progress(progress)
        await self._engine.enqueue_action(ActionType.TRACK_PROGRESS, progress)
        logger.debug(
            f"Tracked {goal_id} on {date_key}: {value} -> {progress.status.value}"
            f"{' (updated)' if existing else ''}"
        )
        return progress
