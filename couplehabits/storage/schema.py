"""Database schema for the couplehabits SQLite store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table and index allowlists (ALLOWED_TABLES, TABLE_INDEXES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset({"users", "couples", "goals", "progress", "outbox"})

# Named indexes per table: index name -> indexed columns (compound when > 1)
TABLE_INDEXES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "users": {"by_email": ("email",)},
    "couples": {"by_code": ("code",)},
    "goals": {"by_couple": ("couple_id",), "by_owner": ("owner_user_id",)},
    "progress": {"by_goal": ("goal_id",), "by_goal_date": ("goal_id", "date_key")},
    "outbox": {"by_status": ("status",)},
}

# Column order per table, used for upserts
TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "users": (
        "id",
        "email",
        "full_name",
        "display_name",
        "avatar_url",
        "gender",
        "date_of_birth",
        "onboarding_completed",
        "couple_id",
        "created_at",
    ),
    "couples": ("id", "user_a_id", "user_b_id", "status", "code", "created_at"),
    "goals": (
        "id",
        "title",
        "description",
        "scope",
        "owner_user_id",
        "couple_id",
        "frequency",
        "tracking_type",
        "target_value",
        "created_at",
        "archived_at",
    ),
    "progress": (
        "id",
        "goal_id",
        "date_key",
        "value",
        "status",
        "recorded_by_user_id",
        "recorded_at",
        "note",
    ),
    "outbox": (
        "id",
        "action_type",
        "payload",
        "created_at",
        "status",
        "retry_count",
        "last_error",
        "last_attempt_at",
    ),
}


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def index_columns(table: str, index: str) -> Tuple[str, ...]:
    """Return the columns backing a named index."""
    validate_table_name(table)
    try:
        return TABLE_INDEXES[table][index]
    except KeyError:
        raise ValueError(f"Unknown index {index!r} on table {table}")


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Users
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    full_name TEXT NOT NULL,
    display_name TEXT,
    avatar_url TEXT,
    gender TEXT,
    date_of_birth TEXT,  -- YYYY-MM-DD
    onboarding_completed INTEGER DEFAULT 0,
    couple_id TEXT,
    created_at INTEGER NOT NULL  -- epoch ms
);
CREATE UNIQUE INDEX IF NOT EXISTS by_email ON users(email);

-- Couples
CREATE TABLE IF NOT EXISTS couples (
    id TEXT PRIMARY KEY,
    user_a_id TEXT NOT NULL,
    user_b_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, active
    code TEXT,  -- 6-character invite code
    created_at INTEGER NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS by_code ON couples(code);

-- Goals
CREATE TABLE IF NOT EXISTS goals (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    scope TEXT NOT NULL,  -- personal, couple
    owner_user_id TEXT,
    couple_id TEXT,
    frequency TEXT NOT NULL,
    tracking_type TEXT NOT NULL,  -- boolean, count
    target_value REAL NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    archived_at INTEGER
);
CREATE INDEX IF NOT EXISTS by_couple ON goals(couple_id);
CREATE INDEX IF NOT EXISTS by_owner ON goals(owner_user_id);

-- Progress (no uniqueness on goal+date: each partner records their own row)
CREATE TABLE IF NOT EXISTS progress (
    id TEXT PRIMARY KEY,
    goal_id TEXT NOT NULL,
    date_key TEXT NOT NULL,
    value REAL NOT NULL,
    status TEXT NOT NULL,  -- completed, partial, missed
    recorded_by_user_id TEXT,
    recorded_at INTEGER NOT NULL,
    note TEXT
);
CREATE INDEX IF NOT EXISTS by_goal ON progress(goal_id);
CREATE INDEX IF NOT EXISTS by_goal_date ON progress(goal_id, date_key);

-- Outbox of local mutations awaiting delivery
CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    action_type TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON of the entity
    created_at INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_attempt_at INTEGER
);
CREATE INDEX IF NOT EXISTS by_status ON outbox(status);
CREATE INDEX IF NOT EXISTS idx_outbox_created ON outbox(created_at);
"""


def init_db(conn: sqlite3.Connection, db_path=None) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Upgrading schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    if db_path is None:
        return

    # Owner read/write only
    import os

    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
