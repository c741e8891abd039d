"""
couplehabits - Offline-first goal tracking for couples.

Local writes land in an on-device SQLite store and are delivered to the
remote store through a durable outbox.
"""

from .protocols import (
    AuthorizationError,
    ConstraintViolation,
    CoupleHabitsError,
    NotFoundError,
    StorageError,
    SyncDeliveryError,
    ValidationError,
)
from .storage import SQLiteStore, SyncEngine

try:
    from importlib.metadata import version

    __version__ = version("couplehabits")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "SQLiteStore",
    "SyncEngine",
    "CoupleHabitsError",
    "ValidationError",
    "ConstraintViolation",
    "AuthorizationError",
    "NotFoundError",
    "StorageError",
    "SyncDeliveryError",
]
