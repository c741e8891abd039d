"""SQLite storage backend for couplehabits.

Local-first, per-device store holding users, couples, goals, progress and
the outbox. Every write is a single transaction: a failed ``put`` leaves
the previous row untouched.
"""

import contextlib
import json
import logging
import sqlite3
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from couplehabits.protocols import ConstraintViolation, StorageError
from couplehabits.types import (
    ActionType,
    ACTION_PAYLOAD_TYPES,
    Couple,
    CoupleStatus,
    Gender,
    Goal,
    GoalScope,
    Progress,
    ProgressStatus,
    SyncAction,
    TrackingType,
    User,
)
from couplehabits.utils import get_couplehabits_home

from .schema import TABLE_COLUMNS, index_columns, init_db, validate_table_name

logger = logging.getLogger(__name__)

Key = Union[Any, Tuple[Any, ...]]


@dataclass
class KeyRange:
    """Inclusive bounds for an index range query."""

    lower: Key
    upper: Key


# === Row <-> record conversion ===


def _enum_or_none(enum_cls, value):
    return enum_cls(value) if value is not None else None


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        display_name=row.get("display_name"),
        avatar_url=row.get("avatar_url"),
        gender=_enum_or_none(Gender, row.get("gender")),
        date_of_birth=row.get("date_of_birth"),
        onboarding_completed=bool(row.get("onboarding_completed")),
        couple_id=row.get("couple_id"),
        created_at=row["created_at"],
    )


def _row_to_couple(row: Dict[str, Any]) -> Couple:
    return Couple(
        id=row["id"],
        user_a_id=row["user_a_id"],
        user_b_id=row.get("user_b_id"),
        status=CoupleStatus(row["status"]),
        code=row.get("code"),
        created_at=row["created_at"],
    )


def _row_to_goal(row: Dict[str, Any]) -> Goal:
    return Goal(
        id=row["id"],
        title=row["title"],
        description=row.get("description"),
        scope=GoalScope(row["scope"]),
        owner_user_id=row.get("owner_user_id"),
        couple_id=row.get("couple_id"),
        frequency=row["frequency"],
        tracking_type=TrackingType(row["tracking_type"]),
        target_value=row["target_value"],
        created_at=row["created_at"],
        archived_at=row.get("archived_at"),
    )


def _row_to_progress(row: Dict[str, Any]) -> Progress:
    return Progress(
        id=row["id"],
        goal_id=row["goal_id"],
        date_key=row["date_key"],
        value=row["value"],
        status=ProgressStatus(row["status"]),
        recorded_by_user_id=row.get("recorded_by_user_id"),
        recorded_at=row["recorded_at"],
        note=row.get("note"),
    )


ENTITY_DECODERS: Dict[type, Callable[[Dict[str, Any]], Any]] = {
    User: _row_to_user,
    Couple: _row_to_couple,
    Goal: _row_to_goal,
    Progress: _row_to_progress,
}


def _row_to_action(row: Dict[str, Any]) -> SyncAction:
    action_type = ActionType(row["action_type"])
    payload_cls = ACTION_PAYLOAD_TYPES[action_type]
    payload = ENTITY_DECODERS[payload_cls](json.loads(row["payload"]))
    return SyncAction(
        id=row["id"],
        action_type=action_type,
        payload=payload,
        created_at=row["created_at"],
        status=row["status"],
        retry_count=row["retry_count"] or 0,
        last_error=row.get("last_error"),
        last_attempt_at=row.get("last_attempt_at"),
    )


TABLE_DECODERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "users": _row_to_user,
    "couples": _row_to_couple,
    "goals": _row_to_goal,
    "progress": _row_to_progress,
    "outbox": _row_to_action,
}

TABLE_RECORD_TYPES: Dict[str, type] = {
    "users": User,
    "couples": Couple,
    "goals": Goal,
    "progress": Progress,
    "outbox": SyncAction,
}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def entity_to_dict(record: Any) -> Dict[str, Any]:
    """Convert an entity dataclass to a JSON-safe dict."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in asdict(record).items()}


def _record_to_row(table: str, record: Any) -> Dict[str, Any]:
    if table == "outbox":
        return {
            "id": record.id,
            "action_type": record.action_type.value,
            "payload": json.dumps(entity_to_dict(record.payload)),
            "created_at": record.created_at,
            "status": record.status.value,
            "retry_count": record.retry_count,
            "last_error": record.last_error,
            "last_attempt_at": record.last_attempt_at,
        }
    return {column: _plain(getattr(record, column)) for column in TABLE_COLUMNS[table]}


class SQLiteStore:
    """SQLite-based local store for couplehabits.

    Features:
    - Upsert-by-id persistence for the four entity tables and the outbox
    - Named secondary indexes (unique on email and invite code)
    - One connection per operation, committed or rolled back as a unit
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        if db_path is not None:
            return Path(db_path).expanduser().resolve()
        return get_couplehabits_home() / "couplehabits.db"

    def _get_conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - sqlite3 errors translated to ConstraintViolation / StorageError
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if "UNIQUE" in str(e):
                raise ConstraintViolation(str(e)) from e
            raise StorageError(str(e)) from e
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    # === Generic contract ===

    def put(self, table: str, record: Any) -> str:
        """Insert or update ``record`` by its id. Idempotent."""
        validate_table_name(table)
        expected = TABLE_RECORD_TYPES[table]
        if not isinstance(record, expected):
            raise TypeError(f"{table} stores {expected.__name__}, got {type(record).__name__}")

        row = _record_to_row(table, record)
        columns = TABLE_COLUMNS[table]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")

        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [row[c] for c in columns],
            )
        return record.id

    def get(self, table: str, record_id: str) -> Optional[Any]:
        validate_table_name(table)
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return TABLE_DECODERS[table](dict(row)) if row else None

    def delete(self, table: str, record_id: str) -> bool:
        validate_table_name(table)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def all(self, table: str) -> List[Any]:
        return self._select(table, "", [])

    def count(self, table: str) -> int:
        validate_table_name(table)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def query_by_index(
        self,
        table: str,
        index: str,
        key: Optional[Key] = None,
        *,
        key_range: Optional[KeyRange] = None,
    ) -> List[Any]:
        """Return all records whose ``index`` matches ``key`` or lies in ``key_range``.

        ``key`` is a scalar for single-column indexes and a tuple for
        compound ones. Order is unspecified.
        """
        columns = index_columns(table, index)
        if (key is None) == (key_range is None):
            raise ValueError("Pass exactly one of key or key_range")

        if key_range is None:
            values = self._as_key(columns, key)
            clauses = [
                f"{column} IS NULL" if value is None else f"{column} = ?"
                for column, value in zip(columns, values)
            ]
            params = [value for value in values if value is not None]
            return self._select(table, "WHERE " + " AND ".join(clauses), params)

        lower = self._as_key(columns, key_range.lower)
        upper = self._as_key(columns, key_range.upper)
        column_list = f"({', '.join(columns)})" if len(columns) > 1 else columns[0]
        marks = f"({', '.join('?' for _ in columns)})" if len(columns) > 1 else "?"
        where = f"WHERE {column_list} >= {marks} AND {column_list} <= {marks}"
        return self._select(table, where, list(lower) + list(upper))

    @staticmethod
    def _as_key(columns: Sequence[str], key: Key) -> Tuple[Any, ...]:
        values = tuple(key) if isinstance(key, (tuple, list)) else (key,)
        if len(values) != len(columns):
            raise ValueError(f"Index on {columns} needs {len(columns)} key parts, got {len(values)}")
        return values

    def _select(self, table: str, where: str, params: Sequence[Any]) -> List[Any]:
        validate_table_name(table)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM {table} {where}", params).fetchall()
        decode = TABLE_DECODERS[table]
        return [decode(dict(row)) for row in rows]

    # === Outbox ===

    def get_queued_actions(self, status: str = "pending") -> List[SyncAction]:
        """Outbox actions with ``status``, oldest first.

        Ties on ``created_at`` keep insertion order.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM outbox
                   WHERE status = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (status,),
            ).fetchall()
        return [_row_to_action(dict(row)) for row in rows]

    # === Users ===

    def save_user(self, user: User) -> str:
        return self.put("users", user)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.get("users", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        found = self.query_by_index("users", "by_email", email)
        return found[0] if found else None

    # === Couples ===

    def save_couple(self, couple: Couple) -> str:
        return self.put("couples", couple)

    def get_couple(self, couple_id: str) -> Optional[Couple]:
        return self.get("couples", couple_id)

    def get_couple_by_code(self, code: str) -> Optional[Couple]:
        found = self.query_by_index("couples", "by_code", code)
        return found[0] if found else None

    def get_couple_for_user(self, user_id: str) -> Optional[Couple]:
        """Find the couple a user belongs to as either member."""
        found = self._select(
            "couples", "WHERE user_a_id = ? OR user_b_id = ? LIMIT 1", (user_id, user_id)
        )
        return found[0] if found else None

    # === Goals ===

    def save_goal(self, goal: Goal) -> str:
        return self.put("goals", goal)

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        return self.get("goals", goal_id)

    def get_goals_for_couple(self, couple_id: str, include_archived: bool = False) -> List[Goal]:
        goals = self.query_by_index("goals", "by_couple", couple_id)
        return goals if include_archived else [g for g in goals if g.archived_at is None]

    def get_goals_for_owner(self, user_id: str, include_archived: bool = False) -> List[Goal]:
        goals = self.query_by_index("goals", "by_owner", user_id)
        return goals if include_archived else [g for g in goals if g.archived_at is None]

    # === Progress ===

    def save_progress(self, progress: Progress) -> str:
        return self.put("progress", progress)

    def get_progress_for_day(self, goal_id: str, date_key: str) -> List[Progress]:
        """All rows for a goal on a day (one per recording partner)."""
        return self.query_by_index("progress", "by_goal_date", (goal_id, date_key))

    def get_progress_history(self, goal_id: str, start_date: str, end_date: str) -> List[Progress]:
        rows = self.query_by_index(
            "progress",
            "by_goal_date",
            key_range=KeyRange((goal_id, start_date), (goal_id, end_date)),
        )
        return sorted(rows, key=lambda p: (p.date_key, p.recorded_at))
