"""couplehabits storage.

Local-first storage using SQLite, an outbox of pending mutations, and the
sync engine that converges the local store with the remote store.
"""

from .mappers import from_remote, to_remote
from .outbox import Outbox
from .sqlite import KeyRange, SQLiteStore
from .sync_engine import SyncContext, SyncEngine

__all__ = [
    "SQLiteStore",
    "KeyRange",
    "Outbox",
    "SyncEngine",
    "SyncContext",
    "from_remote",
    "to_remote",
]
