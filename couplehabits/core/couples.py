"""Couple pairing: create a pending couple, join one by invite code."""

import logging
import secrets
import string
from dataclasses import replace

from couplehabits.protocols import ConstraintViolation, NotFoundError, ValidationError
from couplehabits.storage.sqlite import SQLiteStore
from couplehabits.storage.sync_engine import SyncEngine
from couplehabits.types import ActionType, Couple, CoupleStatus, User, new_id, now_ms

from .validation import INVITE_CODE_LENGTH, validate_couple, validate_user

logger = logging.getLogger(__name__)

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 5


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def normalize_invite_code(code: str) -> str:
    if not isinstance(code, str):
        raise ValidationError("Invite code must be a string")
    return code.strip().upper()


def _require_user(store: SQLiteStore, user_id: str) -> User:
    user = store.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


class CreateCouple:
    """Start a pending couple with a fresh invite code for the partner."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(self, user_id: str) -> Couple:
        user = _require_user(self._store, user_id)
        if user.couple_id:
            raise ValidationError("User is already in a couple")

        couple = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            candidate = validate_couple(
                Couple(
                    id=new_id(),
                    user_a_id=user_id,
                    status=CoupleStatus.PENDING,
                    code=generate_invite_code(),
                    created_at=now_ms(),
                )
            )
            try:
                self._store.save_couple(candidate)
            except ConstraintViolation:
                logger.debug(f"Invite code clash on attempt {attempt}, regenerating")
                continue
            couple = candidate
            break

        if couple is None:
            raise ConstraintViolation(
                f"Could not allocate a unique invite code after {MAX_CODE_ATTEMPTS} attempts"
            )

        user = validate_user(replace(user, couple_id=couple.id))
        self._store.save_user(user)

        # The couple row must exist remotely before the profile references it
        await self._engine.enqueue_action(ActionType.JOIN_COUPLE, couple)
        await self._engine.enqueue_action(ActionType.CREATE_USER_PROFILE, user)
        logger.info(f"User {user_id} created couple {couple.id}")
        return couple


class JoinCouple:
    """Redeem an invite code, making the caller the couple's second member."""

    def __init__(self, store: SQLiteStore, engine: SyncEngine):
        self._store = store
        self._engine = engine

    async def execute(self, user_id: str, code: str) -> Couple:
        """Join the pending couple identified by ``code``.

        The code is looked up locally first and then directly on the
        remote store; a remote hit is saved locally before proceeding.

        Raises:
            NotFoundError: Unknown code, or the user does not exist.
            ValidationError: The couple is already full, is the caller's own
                couple, or the caller is already paired.
        """
        code = normalize_invite_code(code)

        couple = self._store.get_couple_by_code(code)
        if couple is None:
            couple = await self._engine.fetch_couple_by_code(code)
            if couple is not None:
                self._store.save_couple(couple)
        if couple is None:
            raise NotFoundError("Invalid invite code")

        if couple.status == CoupleStatus.ACTIVE or couple.user_b_id:
            raise ValidationError("Couple is already full")
        if couple.user_a_id == user_id:
            raise ValidationError("Cannot join your own couple as partner")

        user = _require_user(self._store, user_id)
        if user.couple_id:
            raise ValidationError("User is already in a couple")

        joined = validate_couple(replace(couple, user_b_id=user_id, status=CoupleStatus.ACTIVE))
        user = validate_user(replace(user, couple_id=joined.id))

        self._store.save_couple(joined)
        self._store.save_user(user)
        await self._engine.enqueue_action(ActionType.JOIN_COUPLE, joined)
        logger.info(f"User {user_id} joined couple {joined.id}")
        return joined
