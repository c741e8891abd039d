"""
Pytest fixtures and test configuration for couplehabits tests.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from couplehabits.protocols import ChangeEvent
from couplehabits.storage import SQLiteStore, SyncEngine
from couplehabits.storage.mappers import to_remote
from couplehabits.types import (
    Couple,
    CoupleStatus,
    Goal,
    GoalScope,
    Progress,
    ProgressStatus,
    TrackingType,
    User,
    now_ms,
)

REMOTE_TABLES = ("users", "couples", "goals", "progress")


class FakeSubscription:
    def __init__(self, remote: "FakeRemoteStore", callback):
        self._remote = remote
        self._callback = callback

    async def unsubscribe(self) -> None:
        if self._callback in self._remote.callbacks:
            self._remote.callbacks.remove(self._callback)


class FakeRemoteStore:
    """In-memory RemoteStore with failure injection.

    - ``fail_ids``: row ids whose upsert raises ConnectionError
    - ``fail_tables``: tables whose select raises ConnectionError
    - ``delays``: row id -> seconds to sleep before the upsert lands
    - ``upserts``: (table, row) in the order they were applied
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {t: {} for t in REMOTE_TABLES}
        self.upserts: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_ids = set()
        self.fail_tables = set()
        self.fail_subscribe = False
        self.delays: Dict[str, float] = {}
        self.callbacks: List[Any] = []
        self.subscribe_calls = 0

    def seed(self, table: str, record) -> Dict[str, Any]:
        row = to_remote(table, record)
        self.tables[table][row["id"]] = row
        return row

    async def upsert(self, table: str, row) -> None:
        delay = self.delays.get(row["id"])
        if delay:
            await asyncio.sleep(delay)
        if row["id"] in self.fail_ids:
            raise ConnectionError(f"remote unreachable for {row['id']}")
        self.upserts.append((table, dict(row)))
        self.tables[table][row["id"]] = dict(row)

    async def select(
        self,
        table: str,
        *,
        match=None,
        any_of=None,
        within: Optional[Tuple[str, Sequence[Any]]] = None,
    ) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        if table in self.fail_tables:
            raise ConnectionError(f"select on {table} failed")
        rows = list(self.tables[table].values())
        if match:
            rows = [r for r in rows if all(r.get(k) == v for k, v in match.items())]
        if any_of:
            rows = [r for r in rows if any(r.get(k) == v for k, v in any_of.items())]
        if within:
            column, values = within
            rows = [r for r in rows if r.get(column) in set(values)]
        return [dict(r) for r in rows]

    async def select_one(self, table: str, match) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, match=match)
        return rows[0] if rows else None

    async def subscribe(self, callback) -> FakeSubscription:
        self.subscribe_calls += 1
        if self.fail_subscribe:
            raise ConnectionError("realtime unavailable")
        self.callbacks.append(callback)
        return FakeSubscription(self, callback)

    async def emit(self, table: str, kind: str, new_row=None, old_row=None) -> List[Any]:
        """Deliver a change event to every subscriber."""
        event = ChangeEvent(table=table, kind=kind, new_row=new_row, old_row=old_row)
        return [await callback(event) for callback in list(self.callbacks)]


def uid() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def ids():
    """Fresh uuids addressable by name: ids.a, ids.b, ids.couple ..."""

    class _Ids(dict):
        def __getattr__(self, name):
            if name.startswith("_"):
                raise AttributeError(name)
            return self.setdefault(name, uid())

    return _Ids()


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db):
    """Create a SQLiteStore instance for testing."""
    store = SQLiteStore(db_path=temp_db)
    yield store
    store.close()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest_asyncio.fixture
async def engine(store, remote):
    """SyncEngine over the temp store and the fake remote, online."""
    engine = SyncEngine(store, remote)
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def offline_engine(store, remote):
    engine = SyncEngine(store, remote, online=False)
    yield engine
    await engine.close()


# === Record factories ===


@pytest.fixture
def make_user():
    def _make(**overrides) -> User:
        fields = dict(
            id=uid(),
            email=f"{uuid.uuid4().hex[:8]}@example.com",
            full_name="Test User",
            created_at=now_ms(),
        )
        fields.update(overrides)
        return User(**fields)

    return _make


@pytest.fixture
def make_couple():
    def _make(user_a_id: str, user_b_id: Optional[str] = None, **overrides) -> Couple:
        fields = dict(
            id=uid(),
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            status=CoupleStatus.ACTIVE if user_b_id else CoupleStatus.PENDING,
            code=uuid.uuid4().hex[:6].upper(),
            created_at=now_ms(),
        )
        fields.update(overrides)
        return Couple(**fields)

    return _make


@pytest.fixture
def make_goal():
    def _make(**overrides) -> Goal:
        fields = dict(
            id=uid(),
            title="Walk daily",
            scope=GoalScope.PERSONAL,
            frequency="daily",
            tracking_type=TrackingType.BOOLEAN,
            target_value=1,
            owner_user_id=uid(),
            created_at=now_ms(),
        )
        fields.update(overrides)
        if fields["scope"] == GoalScope.COUPLE and "owner_user_id" not in overrides:
            fields["owner_user_id"] = None
        return Goal(**fields)

    return _make


@pytest.fixture
def make_progress():
    def _make(goal_id: str, user_id: str, **overrides) -> Progress:
        fields = dict(
            id=uid(),
            goal_id=goal_id,
            date_key="2024-01-01",
            value=1,
            status=ProgressStatus.COMPLETED,
            recorded_by_user_id=user_id,
            recorded_at=now_ms(),
        )
        fields.update(overrides)
        return Progress(**fields)

    return _make
