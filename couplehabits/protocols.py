"""
Error taxonomy and collaborator protocols for couplehabits.

The remote store is the only external collaborator the sync engine talks
to. It is described here as a Protocol so the engine can run against the
Supabase client in production and an in-memory fake in tests.
"""

from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

# =============================================================================
# ERRORS
# =============================================================================


class CoupleHabitsError(Exception):
    """Base for all couplehabits errors."""

    pass


class ValidationError(CoupleHabitsError):
    """Raised when an entity fails its schema invariants. Nothing is persisted."""

    pass


class ConstraintViolation(CoupleHabitsError):
    """Raised on a unique-index clash (duplicate email or invite code)."""

    pass


class AuthorizationError(CoupleHabitsError):
    """Raised when a user acts on something they do not own."""

    pass


class NotFoundError(CoupleHabitsError):
    """Raised when a referenced entity is absent locally and remotely."""

    pass


class StorageError(CoupleHabitsError):
    """Raised on local persistence I/O failures."""

    pass


class SyncDeliveryError(CoupleHabitsError):
    """Raised when a remote upsert fails (network or remote-side rejection).

    Never surfaced to use-case callers: the drain loop records it against
    the outbox action and retries on the next trigger.
    """

    def __init__(self, action_id: str, table: str, cause: BaseException):
        self.action_id = action_id
        self.table = table
        self.cause = cause
        super().__init__(f"Delivery of action {action_id} to {table} failed: {cause}")


# =============================================================================
# REMOTE STORE
# =============================================================================


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    """A row change delivered by the remote change feed."""

    table: str
    kind: ChangeKind
    new_row: Optional[Dict[str, Any]] = None
    old_row: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        self.kind = ChangeKind(str(getattr(self.kind, "value", self.kind)).lower())


ChangeCallback = Callable[[ChangeEvent], Awaitable[Any]]


@runtime_checkable
class Subscription(Protocol):
    """Handle for an active change-feed subscription."""

    async def unsubscribe(self) -> None: ...


@runtime_checkable
class RemoteStore(Protocol):
    """Authoritative remote database.

    Rows are plain dicts keyed by remote column names. Every method may
    raise on network or remote-side failure.
    """

    async def upsert(self, table: str, row: Mapping[str, Any]) -> None:
        """Insert or update ``row`` by its ``id``. Idempotent."""
        ...

    async def select(
        self,
        table: str,
        *,
        match: Optional[Mapping[str, Any]] = None,
        any_of: Optional[Mapping[str, Any]] = None,
        within: Optional[Tuple[str, Sequence[Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching all of ``match``, any of ``any_of`` and
        whose ``within[0]`` column is in ``within[1]``."""
        ...

    async def select_one(self, table: str, match: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the single matching row, or None."""
        ...

    async def subscribe(self, callback: ChangeCallback) -> Subscription:
        """Subscribe to schema-wide row changes."""
        ...
