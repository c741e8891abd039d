"""User profile use cases."""

import logging
from dataclasses import replace
from typing import Any, Optional, Union

from couplehabits.protocols import NotFoundError, ValidationError
from couplehabits.storage.sqlite import SQLiteStore
from couplehabits.storage.sync_engine import SyncEngine
from couplehabits.types import ActionType, Gender, User, new_id, now_ms

from .validation import validate_user

logger = logging.getLogger(__name__)

EDITABLE_PROFILE_FIELDS = frozenset(
    {"full_name", "display_name", "avatar_url", "gender", "date_of_birth", "onboarding_completed"}
)


class CreateUserProfile:
    """Register a new user profile on this device."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(
        self,
        *,
        email: str,
        full_name: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        gender: Optional[Union[Gender, str]] = None,
        date_of_birth: Optional[str] = None,
        user_id: Optional[str] = None,
        onboarding_completed: bool = True,
    ) -> User:
        """Validate and persist a profile, then queue it for sync.

        Raises:
            ValidationError: If any field is invalid.
            ConstraintViolation: If the email is already registered locally.
        """
        user = validate_user(
            User(
                id=user_id or new_id(),
                email=email.strip().lower() if isinstance(email, str) else email,
                full_name=full_name,
                display_name=display_name or None,
                avatar_url=avatar_url,
                gender=gender or None,
                date_of_birth=date_of_birth or None,
                onboarding_completed=onboarding_completed,
                couple_id=None,
                created_at=now_ms(),
            )
        )

        self._store.save_user(user)
        await self._engine.enqueue_action(ActionType.CREATE_USER_PROFILE, user)
        logger.info(f"Created user profile {user.id}")
        return user


class UpdateUserProfile:
    """Edit a profile's personal details. Email and couple are not editable."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(self, user_id: str, **changes: Any) -> User:
        fixed = set(changes) - EDITABLE_PROFILE_FIELDS
        if fixed:
            raise ValidationError(f"Profile fields cannot be changed: {', '.join(sorted(fixed))}")

        existing = self._store.get_user(user_id)
        if existing is None:
            raise NotFoundError(f"User {user_id} not found")

        user = validate_user(replace(existing, **changes))
        self._store.save_user(user)
        await self._engine.enqueue_action(ActionType.CREATE_USER_PROFILE, user)
        return user
