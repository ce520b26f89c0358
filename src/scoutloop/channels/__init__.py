"""Channel transports: the contract, inbound events and entry-point discovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from scoutloop.executors.base import Decision, PendingInput
from scoutloop.models import ApprovalMode

if TYPE_CHECKING:
    from scoutloop.config import Settings

log = logging.getLogger(__name__)


def channel_key(transport: str, chat_id: str) -> str:
    return f"{transport}-{chat_id}"


@dataclass
class InboundMessage:
    transport: str
    chat_id: str
    user_name: str
    text: str
    attachments: list[str] = field(default_factory=list)
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def key(self) -> str:
        return channel_key(self.transport, self.chat_id)


@dataclass
class ApprovalOutcome:
    pending: PendingInput
    decision: Decision
    accepted: bool


@runtime_checkable
class ChannelTransport(Protocol):
    """One messaging transport.  The orchestrator never branches on which."""

    name: str

    @property
    def enabled(self) -> bool: ...

    async def poll(self) -> None:
        """Fetch inbound events and hand each one to the host."""
        ...

    async def send_reply(self, chat_id: str, text: str) -> None: ...

    async def send_typing(self, chat_id: str) -> None: ...

    async def send_approval_prompt(
        self, chat_id: str, pending: PendingInput, interactive: bool
    ) -> None:
        """Ask the user about *pending*; ``interactive`` means buttons can answer it."""
        ...

    async def approval_resolved(self, chat_id: str, pending: PendingInput) -> None:
        """The prompt for *pending* went away without an answer from this chat."""
        ...

    def reply_instructions(self, chat_id: str) -> str:
        """How the agent should send its answer back to *chat_id*."""
        ...


class ChannelHost(Protocol):
    """What a transport may ask of the orchestrator."""

    async def dispatch(self, transport: ChannelTransport, message: InboundMessage) -> Any: ...

    async def respond_to_approval(
        self, key: str, decision: Decision, feedback: str | None = None
    ) -> ApprovalOutcome | None: ...

    async def stop_session(self, key: str) -> bool: ...

    def reset_session(self, key: str) -> None: ...

    def set_approval_mode(self, key: str, mode: ApprovalMode) -> None: ...

    async def session_status(self, key: str) -> str: ...


def load_transports(
    settings: Settings, host: ChannelHost | None
) -> list[ChannelTransport]:
    """Built-in Telegram transport plus any registered ``scoutloop.channels`` factory.

    A factory is called as ``factory(settings, host)``.  Failing factories are
    logged and skipped.
    """
    transports: list[ChannelTransport] = []

    if settings.telegram_token:
        from scoutloop.channels.telegram import TelegramTransport

        transports.append(
            TelegramTransport(
                token=settings.telegram_token,
                users=settings.telegram_users,
                state_dir=settings.state_dir,
                host=host,
            )
        )

    for ep in entry_points(group="scoutloop.channels"):
        try:
            factory = ep.load()
            transports.append(factory(settings, host))
            log.debug("Loaded channel %r from %s", ep.name, ep.value)
        except Exception:
            log.exception("Failed to load channel %r", ep.name)

    return transports
