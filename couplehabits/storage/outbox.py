"""Outbox of local mutations awaiting delivery to the remote store.

Actions live in the ``outbox`` table of the local store, so they survive
restarts. Delivery order is local commit order: ``pending()`` sorts by
creation time with insertion order as the tie-break.
"""

import logging
from typing import Any, Dict, List, Optional

from couplehabits.types import ActionStatus, SyncAction, now_ms

from .sqlite import SQLiteStore

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "outbox"

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH = 500


class Outbox:
    """Durable, ordered queue of SyncActions.

    Args:
        store: The local store the queue is persisted in.
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    def add(self, action: SyncAction) -> str:
        """Persist a new action."""
        return self._store.put(OUTBOX_TABLE, action)

    def get(self, action_id: str) -> Optional[SyncAction]:
        return self._store.get(OUTBOX_TABLE, action_id)

    def pending(self) -> List[SyncAction]:
        """All pending actions, oldest first."""
        return self._store.get_queued_actions(ActionStatus.PENDING.value)

    def remove(self, action_id: str) -> bool:
        """Drop a delivered action. Removal is the synced signal."""
        return self._store.delete(OUTBOX_TABLE, action_id)

    def record_failure(self, action: SyncAction, error: str) -> int:
        """Record a delivery failure; the action stays pending.

        Returns:
            The new retry count.
        """
        action.retry_count += 1
        action.last_error = error[:MAX_ERROR_LENGTH]
        action.last_attempt_at = now_ms()
        action.status = ActionStatus.PENDING
        self._store.put(OUTBOX_TABLE, action)
        return action.retry_count

    def count(self) -> int:
        return len(self._store.query_by_index(OUTBOX_TABLE, "by_status", ActionStatus.PENDING.value))

    def status(self) -> Dict[str, Any]:
        """Summary of the queue: totals, per-type counts, oldest action, worst retry."""
        pending = self.pending()
        by_type: Dict[str, int] = {}
        for action in pending:
            by_type[action.action_type.value] = by_type.get(action.action_type.value, 0) + 1

        return {
            "pending": len(pending),
            "by_type": by_type,
            "oldest_created_at": pending[0].created_at if pending else None,
            "max_retry_count": max((a.retry_count for a in pending), default=0),
        }
