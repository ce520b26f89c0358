from __future__ import annotations

import sqlite3
from pathlib import Path
from textwrap import dedent
from typing import TypeVar

from pydantic import BaseModel

DbConnection = sqlite3.Connection

ModelT = TypeVar("ModelT", bound=BaseModel)


def rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    """Convert a list of sqlite3.Row objects to a list of model instances.

    Args:
        model: The Pydantic model class to instantiate
        rows: List of sqlite3.Row objects from database query

    Returns:
        List of model instances
    """
    return [model(**row) for row in rows]


def init_db(db_path: Path) -> DbConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = sqlite3.connect(str(db_path))
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS session_keys (
            key TEXT PRIMARY KEY,
            session_id TEXT,
            started_date TEXT NOT NULL,
            approval_mode TEXT NOT NULL DEFAULT 'bypassPermissions'
        );

        CREATE TABLE IF NOT EXISTS chat_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            role TEXT NOT NULL,
            key TEXT NOT NULL,
            name TEXT NOT NULL,
            text TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS schedules (
            name TEXT PRIMARY KEY,
            cron TEXT NOT NULL,
            steps TEXT NOT NULL DEFAULT '[]',
            output TEXT,
            prompt TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_run_at TEXT,
            last_status TEXT,
            last_summary TEXT,
            consecutive_errors INTEGER NOT NULL DEFAULT 0,
            max_consecutive_errors INTEGER NOT NULL DEFAULT 5,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS activity_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            trigger TEXT NOT NULL,
            source TEXT NOT NULL,
            status TEXT NOT NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            detail TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_chat_history_key ON chat_history(key, id);
        CREATE INDEX IF NOT EXISTS idx_activity_log_ts ON activity_log(ts);
    """)
    )

    db.commit()
    return db
