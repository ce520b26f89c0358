"""Repositories over the SQLite database, one per persisted concern.

The orchestrator only talks to these classes, so tests can swap any of them
for an in-memory fake.  All of them assume a single writer process.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone, tzinfo
from textwrap import dedent

from scoutloop.db import DbConnection, rows_to
from scoutloop.models import (
    ActivityRecord,
    ApprovalMode,
    ChatMessage,
    Schedule,
    ScheduleState,
    ScheduleStep,
    SessionKeyEntry,
)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionKeyStore:
    """Map of conversation key -> session id, valid for one calendar day."""

    def __init__(
        self,
        db: DbConnection,
        tz: tzinfo = timezone.utc,
        clock: Clock = utcnow,
        default_mode: ApprovalMode = "bypassPermissions",
    ) -> None:
        self._db = db
        self._tz = tz
        self._clock = clock
        self._default_mode = default_mode

    def _today(self) -> str:
        return self._clock().astimezone(self._tz).date().isoformat()

    def get_entry(self, key: str) -> SessionKeyEntry | None:
        """Return the entry for *key*, dropping a session id from a previous day.

        An expired entry is evicted; only its approval mode survives as a
        placeholder so that a chosen mode outlives the daily reset.
        """
        row = self._db.execute(
            "SELECT * FROM session_keys WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        entry = SessionKeyEntry(**row)
        today = self._today()
        if entry.started_date != today:
            self.clear(key)
            if entry.approval_mode == self._default_mode:
                return None
            self.set_approval_mode(key, entry.approval_mode)
            return SessionKeyEntry(
                key=key, started_date=today, approval_mode=entry.approval_mode
            )
        return entry

    def get(self, key: str) -> str | None:
        entry = self.get_entry(key)
        return entry.session_id if entry else None

    def approval_mode(self, key: str) -> ApprovalMode:
        entry = self.get_entry(key)
        return entry.approval_mode if entry else self._default_mode

    def set(self, key: str, session_id: str, mode: ApprovalMode | None = None) -> None:
        self._db.execute(
            dedent("""\
            INSERT INTO session_keys (key, session_id, started_date, approval_mode)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                session_id = excluded.session_id,
                started_date = excluded.started_date,
                approval_mode = excluded.approval_mode
        """),
            (key, session_id, self._today(), mode or self._default_mode),
        )
        self._db.commit()

    def set_approval_mode(self, key: str, mode: ApprovalMode) -> None:
        self._db.execute(
            dedent("""\
            INSERT INTO session_keys (key, session_id, started_date, approval_mode)
            VALUES (?, NULL, ?, ?)
            ON CONFLICT(key) DO UPDATE SET approval_mode = excluded.approval_mode
        """),
            (key, self._today(), mode),
        )
        self._db.commit()

    def clear(self, key: str) -> None:
        self._db.execute("DELETE FROM session_keys WHERE key = ?", (key,))
        self._db.commit()

    def list(self) -> list[SessionKeyEntry]:
        rows = self._db.execute("SELECT * FROM session_keys ORDER BY key").fetchall()
        return rows_to(SessionKeyEntry, rows)


class HistoryLog:
    """Append-only transcript, read back per key for fresh-start context."""

    def __init__(self, db: DbConnection, limit: int = 20) -> None:
        self._db = db
        self._limit = limit

    def append(self, message: ChatMessage) -> None:
        self._db.execute(
            "INSERT INTO chat_history (ts, role, key, name, text) VALUES (?, ?, ?, ?, ?)",
            (message.ts, message.role, message.key, message.name, message.text),
        )
        self._db.commit()

    def load_recent(self, key: str) -> list[ChatMessage]:
        rows = self._db.execute(
            dedent("""\
            SELECT ts, role, key, name, text FROM chat_history
            WHERE key = ?
            ORDER BY id DESC
            LIMIT ?
        """),
            (key, self._limit),
        ).fetchall()
        return rows_to(ChatMessage, list(reversed(rows)))


def _row_to_schedule(row) -> Schedule:
    return Schedule(
        name=row["name"],
        cron=row["cron"],
        steps=[ScheduleStep(**s) for s in json.loads(row["steps"] or "[]")],
        output=row["output"],
        prompt=row["prompt"],
        enabled=bool(row["enabled"]),
        state=ScheduleState(
            last_run_at=row["last_run_at"],
            last_status=row["last_status"],
            last_summary=row["last_summary"],
            consecutive_errors=row["consecutive_errors"],
            max_consecutive_errors=row["max_consecutive_errors"],
        ),
    )


class ScheduleStore:
    """Schedule definitions with their run state embedded in the same row."""

    def __init__(self, db: DbConnection, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    def list(self) -> list[Schedule]:
        rows = self._db.execute("SELECT * FROM schedules ORDER BY name").fetchall()
        return [_row_to_schedule(row) for row in rows]

    def get(self, name: str) -> Schedule | None:
        row = self._db.execute(
            "SELECT * FROM schedules WHERE name = ?", (name,)
        ).fetchone()
        return _row_to_schedule(row) if row else None

    def add(self, schedule: Schedule) -> None:
        self._db.execute(
            dedent("""\
            INSERT INTO schedules
                (name, cron, steps, output, prompt, enabled,
                 consecutive_errors, max_consecutive_errors, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """),
            (
                schedule.name,
                schedule.cron,
                json.dumps([s.model_dump(exclude_none=True) for s in schedule.steps]),
                schedule.output,
                schedule.prompt,
                int(schedule.enabled),
                schedule.state.consecutive_errors,
                schedule.state.max_consecutive_errors,
                self._clock().isoformat(),
            ),
        )
        self._db.commit()

    def remove(self, name: str) -> bool:
        cursor = self._db.execute("DELETE FROM schedules WHERE name = ?", (name,))
        self._db.commit()
        return cursor.rowcount > 0

    def set_enabled(self, name: str, enabled: bool) -> bool:
        cursor = self._db.execute(
            "UPDATE schedules SET enabled = ? WHERE name = ?", (int(enabled), name)
        )
        self._db.commit()
        return cursor.rowcount > 0

    def reset_errors(self, name: str) -> bool:
        cursor = self._db.execute(
            "UPDATE schedules SET consecutive_errors = 0 WHERE name = ?", (name,)
        )
        self._db.commit()
        return cursor.rowcount > 0

    def record_result(
        self, name: str, status: str, summary: str | None = None
    ) -> ScheduleState | None:
        """Persist the outcome of a finished run and return the new state.

        ``error`` increments ``consecutive_errors``; ``ok`` resets it to 0.
        """
        self._db.execute(
            dedent("""\
            UPDATE schedules
            SET last_run_at = ?,
                last_status = ?,
                last_summary = ?,
                consecutive_errors = CASE WHEN ? = 'error'
                    THEN consecutive_errors + 1 ELSE 0 END
            WHERE name = ?
        """),
            (self._clock().isoformat(), status, summary, status, name),
        )
        self._db.commit()
        schedule = self.get(name)
        return schedule.state if schedule else None


class ActivityRecorder:
    """Write-only audit trail of finished triggers."""

    def __init__(self, db: DbConnection) -> None:
        self._db = db

    def append(self, record: ActivityRecord) -> None:
        self._db.execute(
            dedent("""\
            INSERT INTO activity_log (ts, trigger, source, status, duration_ms, detail)
            VALUES (?, ?, ?, ?, ?, ?)
        """),
            (
                record.ts,
                record.trigger,
                record.source,
                record.status,
                record.duration_ms,
                record.detail,
            ),
        )
        self._db.commit()

    def recent(self, limit: int = 20) -> list[ActivityRecord]:
        """Latest records, newest last.  Only used by inspection commands."""
        rows = self._db.execute(
            dedent("""\
            SELECT ts, trigger, source, status, duration_ms, detail
            FROM activity_log ORDER BY id DESC LIMIT ?
        """),
            (limit,),
        ).fetchall()
        return rows_to(ActivityRecord, list(reversed(rows)))
