"""The contract every session backend satisfies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from scoutloop.permissions import SessionOptions

Decision = Literal["approve", "deny"]


@dataclass
class StartResult:
    session_id: str
    status: Literal["started", "queued"] = "started"


@dataclass(frozen=True)
class PendingInput:
    """A session waiting for a human decision (usually a tool permission)."""

    kind: str
    target: str | None = None
    request_id: str | None = None
    prompt: str | None = None

    @property
    def signature(self) -> tuple[str, str]:
        return (self.kind, self.target or "")


@dataclass
class PollResult:
    status: Literal["running", "done", "error"]
    pending_input: PendingInput | None = None
    context_usage: float | None = None  # percent of the context window in use


@runtime_checkable
class SessionExecutor(Protocol):
    """Run, resume, poll and stop agent sessions on some backend."""

    name: str

    @property
    def supports_input_response(self) -> bool: ...

    async def start(self, message: str, options: SessionOptions) -> StartResult:
        """Start a new session.  Raises ``ExecutorRejection`` when refused."""
        ...

    async def resume(
        self, session_id: str, message: str, options: SessionOptions
    ) -> bool:
        """Send *message* into an existing session.

        Returns False when no resumable run exists.  Raises ``ExecutorRejection``
        when the backend cannot be reached.
        """
        ...

    async def poll(self, session_id: str) -> PollResult:
        """Report session status.  Raises ``TransientPollError`` on connectivity loss."""
        ...

    async def cleanup(self, session_id: str) -> None: ...

    async def respond_to_input(
        self,
        session_id: str,
        request_id: str,
        decision: Decision,
        feedback: str | None = None,
    ) -> bool: ...
