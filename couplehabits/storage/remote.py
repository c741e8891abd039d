"""Supabase-backed remote store.

Implements the RemoteStore protocol on the async Supabase client: PostgREST
for upserts and queries, Supabase Realtime for the schema-wide change feed.
Rows travel as plain dicts in remote column naming; translation to local
records happens in ``mappers``.
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from supabase import AsyncClient, acreate_client

from couplehabits.config import Settings, get_settings
from couplehabits.protocols import ChangeCallback, ChangeEvent

logger = logging.getLogger(__name__)


def parse_change_payload(payload: Mapping[str, Any]) -> Optional[ChangeEvent]:
    """Normalize a realtime postgres_changes payload into a ChangeEvent.

    Accepts both the nested ``{"data": {...}}`` shape delivered by the
    Python realtime client and the flat ``{table, eventType, new, old}``
    shape used by the JavaScript client.
    """
    data = payload.get("data", payload)
    table = data.get("table")
    kind = data.get("type") or data.get("eventType")
    if not table or not kind:
        return None
    new_row = data.get("record", data.get("new")) or None
    old_row = data.get("old_record", data.get("old")) or None
    try:
        return ChangeEvent(table=table, kind=kind, new_row=new_row, old_row=old_row)
    except ValueError:
        logger.debug(f"Ignoring realtime event of unknown type {kind!r} on {table}")
        return None


class SupabaseSubscription:
    """Active realtime channel; ``unsubscribe`` removes it."""

    def __init__(self, client: AsyncClient, channel):
        self._client = client
        self._channel = channel

    async def unsubscribe(self) -> None:
        await self._client.remove_channel(self._channel)


class SupabaseRemoteStore:
    """RemoteStore on top of ``supabase.AsyncClient``.

    Args:
        client: A connected async Supabase client.
        channel_name: Realtime channel used for the change feed.
    """

    def __init__(self, client: AsyncClient, channel_name: str = "db-changes"):
        self._client = client
        self._channel_name = channel_name
        self._callback_tasks: Set[asyncio.Task] = set()

    @classmethod
    async def connect(cls, settings: Optional[Settings] = None) -> "SupabaseRemoteStore":
        """Create a client from settings (COUPLEHABITS_SUPABASE_URL / _KEY)."""
        settings = settings or get_settings()
        if not settings.has_remote:
            raise ValueError(
                "COUPLEHABITS_SUPABASE_URL and COUPLEHABITS_SUPABASE_KEY must be set"
            )
        client = await acreate_client(settings.supabase_url, settings.supabase_key)
        return cls(client, channel_name=settings.realtime_channel)

    async def upsert(self, table: str, row: Mapping[str, Any]) -> None:
        await self._client.table(table).upsert(dict(row)).execute()

    async def select(
        self,
        table: str,
        *,
        match: Optional[Mapping[str, Any]] = None,
        any_of: Optional[Mapping[str, Any]] = None,
        within: Optional[Tuple[str, Sequence[Any]]] = None,
    ) -> List[Dict[str, Any]]:
        query = self._client.table(table).select("*")
        for column, value in (match or {}).items():
            query = query.eq(column, value)
        if any_of:
            query = query.or_(",".join(f"{column}.eq.{value}" for column, value in any_of.items()))
        if within:
            column, values = within
            query = query.in_(column, list(values))
        response = await query.execute()
        return list(response.data or [])

    async def select_one(self, table: str, match: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        query = self._client.table(table).select("*")
        for column, value in match.items():
            query = query.eq(column, value)
        response = await query.maybe_single().execute()
        # postgrest returns no response at all when nothing matched
        if response is None:
            return None
        return response.data or None

    async def subscribe(self, callback: ChangeCallback) -> SupabaseSubscription:
        def on_change(payload: Dict[str, Any]) -> None:
            event = parse_change_payload(payload)
            if event is None:
                logger.debug(f"Ignoring unrecognized realtime payload: {payload!r}")
                return
            task = asyncio.ensure_future(callback(event))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

        channel = self._client.channel(self._channel_name)
        channel.on_postgres_changes("*", schema="public", callback=on_change)
        await channel.subscribe()
        return SupabaseSubscription(self._client, channel)
