"""Sync engine for couplehabits storage.

SyncEngine owns the device's sync context (current user and couple) and
keeps the local store and the remote store converging:

- enqueue: persist a SyncAction to the outbox, then drain in the background
  when online
- drain (push): deliver pending actions oldest first, one at a time, then pull
- pull: fetch everything the current user may see and upsert it locally
- realtime: apply row changes from the remote change feed as they arrive

Remote rows only ever enter the local store through the mappers, and every
local write is an upsert by primary key, so replaying any of the above is
harmless. Conflicts resolve as last-write-wins at the remote store.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from couplehabits.protocols import (
    ChangeEvent,
    ChangeKind,
    CoupleHabitsError,
    RemoteStore,
    Subscription,
    SyncDeliveryError,
)
from couplehabits.types import (
    ActionType,
    Couple,
    Entity,
    SyncAction,
    SyncResult,
)

from .mappers import from_remote, to_remote
from .outbox import Outbox
from .sqlite import SQLiteStore

logger = logging.getLogger(__name__)

# Errors that make a single remote row unusable without aborting its step
ROW_ERRORS = (CoupleHabitsError, KeyError, ValueError, TypeError)


@dataclass(frozen=True)
class SyncContext:
    """Scope of what this device pulls and listens for."""

    user_id: str
    couple_id: Optional[str] = None


class SyncEngine:
    """Sync engine handling the outbox, push/pull and the realtime feed.

    Args:
        store: The device's local store.
        remote: The remote store client.
        online: Initial connectivity. While offline, enqueued actions wait
            for ``set_online(True)``.
    """

    def __init__(self, store: SQLiteStore, remote: RemoteStore, *, online: bool = True):
        self._store = store
        self._remote = remote
        self.outbox = Outbox(store)

        self._context: Optional[SyncContext] = None
        self._online = online
        self._draining = False
        self._subscription: Optional[Subscription] = None
        self._listeners: List[Callable[[], Any]] = []
        self._tasks: Set[asyncio.Task] = set()

        self._change_handlers = {
            "goals": self._apply_goal_change,
            "progress": self._apply_progress_change,
            "couples": self._apply_couple_change,
            "users": self._apply_user_change,
        }

    # === Context ===

    @property
    def context(self) -> Optional[SyncContext]:
        return self._context

    async def set_context(self, user_id: str, couple_id: Optional[str] = None) -> SyncResult:
        """Scope the engine to a user (and couple), subscribe once, and pull.

        Safe to call repeatedly; the change feed is only subscribed once.
        """
        if not user_id:
            raise ValueError("user_id is required")

        context = SyncContext(user_id=user_id, couple_id=couple_id)
        if context != self._context:
            logger.info(f"Sync context set: user={user_id} couple={couple_id}")
        self._context = context

        await self._start_realtime()
        return await self.pull_from_remote()

    async def clear_context(self) -> None:
        """Forget the current user and stop listening for remote changes."""
        await self._stop_realtime()
        self._context = None

    # === Connectivity ===

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Record a connectivity change. Coming online triggers a drain."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Back online, draining outbox")
            self._spawn(self.drain())

    # === Change notification ===

    def add_listener(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a "data changed" listener.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Data-changed listener failed: {e}", exc_info=True)

    # === Outbox / Push ===

    async def enqueue_action(
        self, action_type: Union[ActionType, str], payload: Entity
    ) -> SyncAction:
        """Persist a mutation for delivery. Never waits on the network."""
        action = SyncAction.create(action_type, payload)
        self.outbox.add(action)
        logger.debug(f"Queued {action.action_type.value} {action.id} ({action.table}:{payload.id})")

        if self._online:
            self._spawn(self.drain())
        return action

    async def drain(self) -> Optional[SyncResult]:
        """Deliver pending outbox actions in commit order, then pull.

        Only one drain runs at a time; a call made while one is active
        returns None without doing anything. A failed action stays queued
        with its retry count incremented and does not stop later actions.
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return None

        self._draining = True
        result = SyncResult()
        try:
            pending = self.outbox.pending()
            logger.debug(f"Pushing {len(pending)} queued actions")

            for action in pending:
                try:
                    await self._push(action)
                except SyncDeliveryError as e:
                    logger.error(f"{e}", exc_info=e.cause)
                    result.errors.append(str(e))
                    self._record_failure(action, e.cause)
                    continue

                try:
                    self.outbox.remove(action.id)
                except CoupleHabitsError as e:
                    # Delivered; it is sent again on the next drain
                    logger.error(f"Failed to remove delivered action {action.id}: {e}")
                    result.errors.append(f"Failed to remove action {action.id}: {e}")
                    continue
                result.pushed += 1

            pull_result = await self.pull_from_remote()
            result.pulled = pull_result.pulled
            result.errors.extend(pull_result.errors)
        finally:
            self._draining = False

        logger.info(
            f"Drain complete: pushed={result.pushed}, pulled={result.pulled}, "
            f"errors={len(result.errors)}"
        )
        return result

    async def _push(self, action: SyncAction) -> None:
        """Map and upsert one action's payload into its remote table."""
        try:
            row = to_remote(action.table, action.payload)
            await self._remote.upsert(action.table, row)
        except Exception as e:
            raise SyncDeliveryError(action.id, action.table, e) from e

    def _record_failure(self, action: SyncAction, cause: BaseException) -> None:
        try:
            retry_count = self.outbox.record_failure(action, str(cause))
        except CoupleHabitsError as e:
            logger.error(f"Failed to record failure for action {action.id}: {e}")
            return
        logger.debug(f"Action {action.id} stays queued (retry {retry_count})")

    # === Pull ===

    async def pull_from_remote(self) -> SyncResult:
        """Hydrate the local store with everything the current user may see.

        Never raises: each step logs its own failure into the result, and
        whatever earlier steps wrote stays written.
        """
        result = SyncResult()
        context = self._context
        if context is None:
            logger.debug("No sync context, skipping pull")
            return result

        couple = await self._pull_couple(context, result)
        couple_id = couple.id if couple else context.couple_id

        await asyncio.gather(
            self._pull_members(couple, result),
            self._pull_goals_and_progress(context.user_id, couple_id, result),
        )

        if result.errors:
            logger.warning(f"Pull finished with {len(result.errors)} errors: {result.errors[:3]}")
        logger.debug(f"Pulled {result.pulled} rows")

        self._notify_changed()
        return result

    async def _pull_couple(self, context: SyncContext, result: SyncResult) -> Optional[Couple]:
        """Fetch the context couple, discovering it by membership if unknown."""
        try:
            if context.couple_id:
                row = await self._remote.select_one("couples", {"id": context.couple_id})
            else:
                rows = await self._remote.select(
                    "couples",
                    any_of={"user_a_id": context.user_id, "user_b_id": context.user_id},
                )
                if len(rows) > 1:
                    logger.warning(f"User {context.user_id} belongs to {len(rows)} couples")
                row = rows[0] if rows else None
            if row is None:
                return None
            couple = from_remote("couples", row)
        except Exception as e:
            logger.error(f"Failed to pull couple: {e}", exc_info=True)
            result.errors.append(f"Failed to pull couples: {e}")
            return None

        if context.couple_id is None and self._context == context:
            logger.info(f"Discovered couple {couple.id} for user {context.user_id}")
            self._context = replace(context, couple_id=couple.id)

        self._store_row("couples", couple, result)
        return couple

    async def _pull_members(self, couple: Optional[Couple], result: SyncResult) -> None:
        """Fetch both member profiles of the couple."""
        if couple is None:
            return

        member_ids = [uid for uid in (couple.user_a_id, couple.user_b_id) if uid]
        rows = await asyncio.gather(
            *(self._remote.select_one("users", {"id": uid}) for uid in member_ids),
            return_exceptions=True,
        )
        for user_id, row in zip(member_ids, rows):
            if isinstance(row, BaseException):
                logger.error(f"Failed to pull user {user_id}: {row}", exc_info=row)
                result.errors.append(f"Failed to pull users:{user_id}: {row}")
            elif row is not None:
                self._apply_row("users", row, result)

    async def _pull_goals_and_progress(
        self, user_id: str, couple_id: Optional[str], result: SyncResult
    ) -> None:
        """Fetch personal and couple goals, then their progress rows."""
        try:
            if couple_id:
                goal_rows = await self._remote.select(
                    "goals", any_of={"owner_user_id": user_id, "couple_id": couple_id}
                )
            else:
                goal_rows = await self._remote.select("goals", match={"owner_user_id": user_id})
        except Exception as e:
            logger.error(f"Failed to pull goals: {e}", exc_info=True)
            result.errors.append(f"Failed to pull goals: {e}")
            return

        goal_ids = []
        for row in goal_rows:
            self._apply_row("goals", row, result)
            if row.get("id"):
                goal_ids.append(row["id"])

        if not goal_ids:
            return

        try:
            progress_rows = await self._remote.select("progress", within=("goal_id", goal_ids))
        except Exception as e:
            logger.error(f"Failed to pull progress: {e}", exc_info=True)
            result.errors.append(f"Failed to pull progress: {e}")
            return

        for row in progress_rows:
            self._apply_row("progress", row, result)

    def _apply_row(self, table: str, row: Mapping[str, Any], result: SyncResult) -> None:
        try:
            record = from_remote(table, row)
        except ROW_ERRORS as e:
            logger.error(f"Skipping malformed {table} row {row.get('id')}: {e}")
            result.errors.append(f"Malformed {table}:{row.get('id')}: {e}")
            return
        self._store_row(table, record, result)

    def _store_row(self, table: str, record: Any, result: SyncResult) -> None:
        try:
            self._store.put(table, record)
        except CoupleHabitsError as e:
            logger.error(f"Failed to store {table}:{record.id}: {e}")
            result.errors.append(f"Failed to store {table}:{record.id}: {e}")
            return
        result.pulled += 1

    async def fetch_couple_by_code(self, code: str) -> Optional[Couple]:
        """Look up a couple by invite code directly on the remote store."""
        try:
            row = await self._remote.select_one("couples", {"code": code})
            return from_remote("couples", row) if row else None
        except Exception as e:
            logger.warning(f"Remote invite-code lookup for {code} failed: {e}")
            return None

    # === Realtime ===

    async def _start_realtime(self) -> None:
        if self._subscription is not None:
            return
        try:
            self._subscription = await self._remote.subscribe(self.handle_change)
            logger.info("Subscribed to remote change feed")
        except Exception as e:
            # Retried on the next set_context()
            logger.error(f"Failed to subscribe to remote changes: {e}", exc_info=True)

    async def _stop_realtime(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.unsubscribe()
        except Exception as e:
            logger.warning(f"Failed to unsubscribe from remote changes: {e}")

    async def handle_change(self, event: ChangeEvent) -> bool:
        """Apply one change-feed event.

        Returns:
            True if the local store was updated. Failures are logged and
            confined to this event.
        """
        handler = self._change_handlers.get(event.table)
        if handler is None:
            logger.debug(f"Ignoring change on untracked table {event.table}")
            return False

        try:
            changed = await handler(event)
        except Exception as e:
            logger.error(f"Error handling {event.kind.value} on {event.table}: {e}", exc_info=True)
            return False

        if changed:
            self._notify_changed()
        return changed

    async def _apply_goal_change(self, event: ChangeEvent) -> bool:
        if event.kind == ChangeKind.DELETE:
            # Goals are archived, not deleted; archiving arrives as an update
            logger.debug(f"Ignoring goal delete {(event.old_row or {}).get('id')}")
            return False
        if not event.new_row:
            return False
        self._store.put("goals", from_remote("goals", event.new_row))
        return True

    async def _apply_progress_change(self, event: ChangeEvent) -> bool:
        if event.kind == ChangeKind.DELETE or not event.new_row:
            return False
        self._store.put("progress", from_remote("progress", event.new_row))
        return True

    async def _apply_couple_change(self, event: ChangeEvent) -> bool:
        context = self._context
        if event.kind == ChangeKind.DELETE or not event.new_row or context is None:
            return False
        if event.new_row.get("id") != context.couple_id:
            return False

        couple = from_remote("couples", event.new_row)
        self._store.put("couples", couple)

        partner_id = couple.partner_of(context.user_id)
        if partner_id:
            try:
                row = await self._remote.select_one("users", {"id": partner_id})
                if row:
                    self._store.put("users", from_remote("users", row))
            except Exception as e:
                logger.error(f"Failed to fetch partner {partner_id}: {e}", exc_info=True)
        return True

    async def _apply_user_change(self, event: ChangeEvent) -> bool:
        if event.kind == ChangeKind.DELETE or not event.new_row:
            return False
        self._store.put("users", from_remote("users", event.new_row))
        return True

    # === Background work ===

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, background drain deferred")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background drain failed: {exc}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for background drains scheduled so far (and any they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self._stop_realtime()
        await self.wait_idle()

    def status(self) -> Dict[str, Any]:
        """Outbox summary plus connectivity and context."""
        status = self.outbox.status()
        status["online"] = self._online
        status["draining"] = self._draining
        status["context"] = (
            {"user_id": self._context.user_id, "couple_id": self._context.couple_id}
            if self._context
            else None
        )
        return status
