"""Exception taxonomy shared by executors, stores and the orchestrator."""

from __future__ import annotations


class ScoutloopError(Exception):
    """Base class for all scoutloop errors."""


class ConfigError(ScoutloopError):
    """Invalid configuration for a single operation (bad cron, unknown schedule)."""


class ExecutorRejection(ScoutloopError):
    """The executor explicitly refused to start or resume a session."""

    def __init__(
        self, message: str, status_code: int | None = None, body: str | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientPollError(ScoutloopError):
    """A poll call failed for connectivity reasons; the session may be fine."""


class SessionLost(ScoutloopError):
    """A session kept reporting errors for longer than the grace window."""

    def __init__(self, session_id: str, elapsed: float) -> None:
        super().__init__(f"Session {session_id} lost after {elapsed:.0f}s of errors")
        self.session_id = session_id
        self.elapsed = elapsed


class ResumeInvalid(ScoutloopError):
    """Resume was refused because no matching prior run exists."""
