from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "fcc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), timeout=10.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS locks (
              lock_key TEXT PRIMARY KEY,
              holder TEXT,              -- NULL when released
              acquired_at REAL,
              expires_at REAL,          -- NULL means no lease expiry
              fence INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS state_versions (
              version INTEGER PRIMARY KEY AUTOINCREMENT,
              store TEXT NOT NULL,
              payload BLOB NOT NULL,    -- encrypted
              fence INTEGER,
              created_at TEXT NOT NULL
            );

            CREATE TRIGGER IF NOT EXISTS state_versions_no_update
            BEFORE UPDATE ON state_versions
            BEGIN
              SELECT RAISE(ABORT, 'state versions are immutable');
            END;

            CREATE TRIGGER IF NOT EXISTS state_versions_no_delete
            BEFORE DELETE ON state_versions
            BEGIN
              SELECT RAISE(ABORT, 'state versions are immutable');
            END;

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              fleet TEXT,
              member TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_state_versions_store ON state_versions(store, version);
            """
        )


def log_event(level: str, message: str, fleet: str | None = None, member: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, fleet, member, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), fleet, member, message),
        )


def latest_events(limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if level:
            rows = conn.execute(
                "SELECT * FROM events WHERE level=? ORDER BY id DESC LIMIT ?", (level.upper(), limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
