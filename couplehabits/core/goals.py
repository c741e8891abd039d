"""Goal use cases: create, edit and archive."""

import logging
from dataclasses import replace
from typing import Any, Optional, Union

from couplehabits.protocols import AuthorizationError, NotFoundError, ValidationError
from couplehabits.storage.sqlite import SQLiteStore
from couplehabits.storage.sync_engine import SyncEngine
from couplehabits.types import ActionType, Goal, GoalScope, TrackingType, new_id, now_ms

from .validation import validate_goal

logger = logging.getLogger(__name__)

# Fields UpdateGoal may change; id, scope, owner, couple and created_at are fixed
EDITABLE_GOAL_FIELDS = frozenset(
    {"title", "description", "frequency", "target_value", "tracking_type", "archived_at"}
)


def load_goal_for_user(store: SQLiteStore, goal_id: str, user_id: str) -> Goal:
    """Fetch a goal and check ``user_id`` may act on it.

    Personal goals belong to their owner only. Couple goals are open to
    both members; when the couple is known locally, outsiders are refused.

    Raises:
        NotFoundError: If the goal is not in the local store.
        AuthorizationError: If the user may not act on the goal.
    """
    goal = store.get_goal(goal_id)
    if goal is None:
        raise NotFoundError(f"Goal {goal_id} not found")

    if goal.scope == GoalScope.PERSONAL:
        if goal.owner_user_id != user_id:
            raise AuthorizationError("Cannot act on another user's personal goal")
    else:
        couple = store.get_couple(goal.couple_id)
        if couple is not None and user_id not in (couple.user_a_id, couple.user_b_id):
            raise AuthorizationError("Cannot act on a goal of a couple you are not part of")
    return goal


class CreateGoal:
    """Create a personal or couple goal and queue it for sync."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(
        self,
        *,
        title: str,
        scope: Union[GoalScope, str],
        frequency: str,
        tracking_type: Union[TrackingType, str],
        target_value: Optional[float] = None,
        description: Optional[str] = None,
        owner_user_id: Optional[str] = None,
        couple_id: Optional[str] = None,
    ) -> Goal:
        goal = Goal(
            id=new_id(),
            title=title,
            scope=scope,
            frequency=frequency,
            tracking_type=tracking_type,
            target_value=target_value or 1,
            description=description,
            owner_user_id=owner_user_id,
            couple_id=couple_id,
            created_at=now_ms(),
            archived_at=None,
        )
        validate_goal(goal)

        self._store.save_goal(goal)
        await self._engine.enqueue_action(ActionType.CREATE_GOAL, goal)
        logger.debug(f"Created {goal.scope.value} goal {goal.id}")
        return goal


class UpdateGoal:
    """Edit the mutable fields of a goal.

    Only fields listed in ``EDITABLE_GOAL_FIELDS`` may change. Identity
    fields are kept from the stored goal.
    """

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(self, goal_id: str, user_id: str, **updates: Any) -> Goal:
        fixed = set(updates) - EDITABLE_GOAL_FIELDS
        if fixed:
            raise ValidationError(f"Goal fields cannot be changed: {', '.join(sorted(fixed))}")

        existing = load_goal_for_user(self._store, goal_id, user_id)
        updated = validate_goal(replace(existing, **updates))

        self._store.save_goal(updated)
        await self._engine.enqueue_action(ActionType.UPDATE_GOAL, updated)
        return updated


class ArchiveGoal:
    """Archive a goal by stamping ``archived_at``. Goals are never deleted."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._update = UpdateGoal(store, engine)

    async def execute(self, goal_id: str, user_id: str) -> Goal:
        return await self._update.execute(goal_id, user_id, archived_at=now_ms())
