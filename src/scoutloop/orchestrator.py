"""Decide when to start or resume agent sessions and follow them to completion.

One :class:`Orchestrator` per process owns all in-flight state: the schedule
trackers, the active sessions keyed by schedule name or channel key, and the
backlog of channel messages that arrived while their conversation was busy.
Two cooperative loops drive it: a coarse schedule tick and a fine channel
tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Literal

from scoutloop.channels import ApprovalOutcome, ChannelTransport, InboundMessage
from scoutloop.config import Settings
from scoutloop.errors import (
    ConfigError,
    ExecutorRejection,
    ResumeInvalid,
    SessionLost,
    TransientPollError,
)
from scoutloop.executors.base import Decision, PendingInput, PollResult, SessionExecutor, StartResult
from scoutloop.models import ActivityRecord, ApprovalMode, ChatMessage, Schedule
from scoutloop.permissions import MODE_LABELS, SessionOptions, schedule_profile
from scoutloop.prompts import (
    build_channel_message,
    build_resume_message,
    build_schedule_message,
)
from scoutloop.scheduling import ScheduleTracker, init_trackers, is_auto_disabled
from scoutloop.stores import (
    ActivityRecorder,
    Clock,
    HistoryLog,
    ScheduleStore,
    SessionKeyStore,
    utcnow,
)

log = logging.getLogger(__name__)

COULD_NOT_START = "Sorry, I couldn't start a session right now. Try again in a moment."
BUSY_NOTICE = "Still working on your previous message. I'll pick this up as soon as it's done."

DispatchOutcome = Literal["resumed", "started", "queued", "backlogged", "failed"]
SessionStatus = Literal["pending_start", "running", "waiting_approval", "done", "error"]


@dataclass
class ActiveSession:
    owner: str  # schedule name or channel key
    session_id: str
    kind: Literal["schedule", "channel"]
    started_at: datetime
    status: SessionStatus = "pending_start"
    transport: ChannelTransport | None = None
    chat_id: str | None = None
    error_since: datetime | None = None
    pending: PendingInput | None = None
    relayed_signature: tuple[str, str] | None = None
    answered_request: str | None = None


@dataclass
class _Backlog:
    transport: ChannelTransport
    messages: list[InboundMessage] = field(default_factory=list)


class Orchestrator:
    def __init__(
        self,
        executor: SessionExecutor,
        *,
        keys: SessionKeyStore,
        history: HistoryLog,
        schedules: ScheduleStore,
        activity: ActivityRecorder,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._executor = executor
        self._keys = keys
        self._history = history
        self._schedules = schedules
        self._activity = activity
        self._settings = settings
        self._clock = clock
        self._tz = settings.tzinfo

        self._transports: list[ChannelTransport] = []
        self._trackers: list[ScheduleTracker] = []
        self._schedule_fingerprint: list[str] | None = None
        self._schedule_sessions: dict[str, ActiveSession] = {}
        self._channel_sessions: dict[str, ActiveSession] = {}
        self._backlog: dict[str, _Backlog] = {}
        # owner -> session id that already got the context usage warning
        self._usage_warned: dict[str, str] = {}
        self._stopping = asyncio.Event()
        self.run_now_interval = 5.0

    # -- wiring -----------------------------------------------------------

    def add_transport(self, transport: ChannelTransport) -> None:
        self._transports.append(transport)

    @property
    def executor(self) -> SessionExecutor:
        return self._executor

    def active_schedule_sessions(self) -> dict[str, str]:
        return {name: a.session_id for name, a in self._schedule_sessions.items()}

    def active_channel_sessions(self) -> dict[str, str]:
        return {key: a.session_id for key, a in self._channel_sessions.items()}

    def session(self, owner: str) -> ActiveSession | None:
        return self._schedule_sessions.get(owner) or self._channel_sessions.get(owner)

    # -- lifetime ---------------------------------------------------------

    async def run(self) -> None:
        """Run both loops until :meth:`stop` is called."""
        self._stopping.clear()
        enabled = [t.name for t in self._transports if t.enabled]
        log.info(
            "Orchestrator started (executor=%s, channels=%s)",
            self._executor.name,
            ", ".join(enabled) or "none",
        )
        await asyncio.gather(
            self._loop("schedule", self.check_schedules, self._settings.schedule_tick),
            self._loop("channel", self.channel_tick, self._settings.channel_tick),
        )
        log.info("Orchestrator stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _loop(
        self, label: str, step: Callable[[], Awaitable[None]], interval: float
    ) -> None:
        while not self._stopping.is_set():
            try:
                await step()
            except Exception:
                log.exception("%s tick failed", label.capitalize())
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -- schedules --------------------------------------------------------

    def _reload_schedules(self) -> dict[str, Schedule]:
        schedules = self._schedules.list()
        fingerprint = [s.definition_key() for s in schedules]
        if fingerprint != self._schedule_fingerprint:
            if self._schedule_fingerprint is not None:
                log.info("Schedules changed, reinitializing trackers")
            self._trackers = init_trackers(schedules, self._tz, self._clock())
            self._schedule_fingerprint = fingerprint
            log.info("Tracking %d schedule(s)", len(self._trackers))
            for tracker in self._trackers:
                log.info("  %s: next fire at %s", tracker.name, tracker.next_fire.isoformat())
        return {s.name: s for s in schedules}

    async def check_schedules(self) -> None:
        """Fire every due schedule, then poll the running ones."""
        by_name = self._reload_schedules()
        now = self._clock()

        for tracker in self._trackers:
            schedule = by_name.get(tracker.name)
            if schedule is None or is_auto_disabled(schedule.state):
                continue
            if tracker.name in self._schedule_sessions:
                continue
            if not tracker.is_due(now):
                continue
            try:
                await self.fire(schedule)
            except Exception:
                log.exception("Firing schedule %s failed", tracker.name)
            finally:
                tracker.advance(now)
                log.info("  %s: next fire at %s", tracker.name, tracker.next_fire.isoformat())

        await self.poll_schedule_sessions()

    async def fire(self, schedule: Schedule) -> StartResult | None:
        """Start a session for *schedule* under the restricted profile.

        Returns None when the executor refused; that counts as a failed run.
        """
        if schedule.name in self._schedule_sessions:
            log.info("Schedule %s already has an active session", schedule.name)
            return None

        log.info("Firing schedule: %s", schedule.name)
        try:
            result = await self._executor.start(
                build_schedule_message(schedule), schedule_profile()
            )
        except ExecutorRejection as exc:
            log.error("  %s: start rejected: %s", schedule.name, exc)
            self._record_schedule_result(schedule.name, "error", 0, summary=str(exc))
            return None

        if result.status == "queued":
            log.info("  %s: queued as %s", schedule.name, result.session_id)
            return result

        log.info("  Session started: %s", result.session_id)
        self._schedule_sessions[schedule.name] = ActiveSession(
            owner=schedule.name,
            session_id=result.session_id,
            kind="schedule",
            started_at=self._clock(),
        )
        return result

    async def poll_schedule_sessions(self) -> None:
        for name, active in list(self._schedule_sessions.items()):
            try:
                await self._poll_and_settle(active)
            except Exception:
                log.exception("Polling schedule %s failed", name)

    async def run_now(self, name: str) -> bool:
        """Fire *name* immediately and wait for the outcome.

        Skips the trackers and the auto-disable check.  Raises ``ConfigError``
        for an unknown schedule; returns False if the run failed.
        """
        schedule = self._schedules.get(name)
        if schedule is None:
            raise ConfigError(f"Schedule {name!r} not found")

        log.info("Running schedule immediately: %s", name)
        result = await self.fire(schedule)
        if result is None:
            return False
        if result.status == "queued":
            log.info("No active session to track (queued)")
            return True

        active = self._schedule_sessions[name]
        log.info("Waiting for session to complete...")
        while True:
            outcome = await self._poll_and_settle(active)
            if outcome is not None:
                return outcome == "ok"
            await asyncio.sleep(self.run_now_interval)

    def _record_schedule_result(
        self, name: str, status: str, duration_ms: int, summary: str | None = None
    ) -> None:
        state = self._schedules.record_result(name, status, summary)
        self._activity.append(
            ActivityRecord(
                ts=self._clock().isoformat(),
                trigger="schedule",
                source=name,
                status=status,
                duration_ms=duration_ms,
                detail=summary,
            )
        )
        if state is not None and status == "error" and is_auto_disabled(state):
            log.warning(
                "Schedule %s auto-disabled after %d consecutive errors",
                name,
                state.consecutive_errors,
            )

    # -- polling ----------------------------------------------------------

    async def _poll_once(self, active: ActiveSession) -> str | None:
        """Poll *active* once; return ``"ok"``/``"error"`` when it ended.

        Error results and transient poll failures only end the session once
        they have persisted for the whole grace window.
        """
        now = self._clock()
        result: PollResult | None
        try:
            result = await self._executor.poll(active.session_id)
        except TransientPollError as exc:
            log.warning("Poll of %s failed transiently: %s", active.session_id, exc)
            result = None

        if result is not None and result.status != "error":
            active.error_since = None
            if result.status == "done":
                return "ok"
            await self._observe_running(active, result)
            return None

        if active.error_since is None:
            active.error_since = now
        elapsed = (now - active.error_since).total_seconds()
        if elapsed >= self._settings.grace_window:
            raise SessionLost(active.session_id, elapsed)
        return None

    async def _poll_and_settle(self, active: ActiveSession) -> str | None:
        try:
            outcome = await self._poll_once(active)
        except SessionLost as exc:
            log.warning("Session error/lost: %s (%s)", active.owner, exc)
            outcome = "error"
        if outcome is not None:
            await self._settle(active, outcome)
        return outcome

    async def _observe_running(self, active: ActiveSession, result: PollResult) -> None:
        pending = result.pending_input
        if pending is not None:
            active.status = "waiting_approval"
            active.pending = pending
            # the backend may still report a request we answered last tick
            answered = (
                pending.request_id is not None
                and pending.request_id == active.answered_request
            )
            if not answered:
                active.answered_request = None
                if active.relayed_signature != pending.signature:
                    active.relayed_signature = pending.signature
                    await self._relay_approval(active, pending)
        else:
            active.status = "running"
            previous = active.pending
            answered = active.answered_request is not None
            active.pending = None
            active.answered_request = None
            if active.relayed_signature is not None:
                active.relayed_signature = None
                if previous is not None and not answered and active.transport:
                    await active.transport.approval_resolved(active.chat_id, previous)

        if active.transport is not None:
            await active.transport.send_typing(active.chat_id)

        usage = result.context_usage
        if (
            usage is not None
            and usage >= self._settings.context_warn_percent
            and self._usage_warned.get(active.owner) != active.session_id
        ):
            self._usage_warned[active.owner] = active.session_id
            await self._notify(
                active,
                f"Context at {round(usage)}%. Quality may degrade, "
                "send /new to start a fresh session.",
            )

    async def _relay_approval(self, active: ActiveSession, pending: PendingInput) -> None:
        if active.transport is None:
            log.warning(
                "Session %s (%s) is waiting for input: %s %s",
                active.session_id,
                active.owner,
                pending.kind,
                pending.target or "",
            )
            return
        interactive = self._executor.supports_input_response and bool(pending.request_id)
        await active.transport.send_approval_prompt(active.chat_id, pending, interactive)

    async def _notify(self, active: ActiveSession, text: str) -> None:
        if active.transport is None:
            log.warning("%s: %s", active.owner, text)
            return
        await active.transport.send_reply(active.chat_id, text)

    async def _settle(self, active: ActiveSession, outcome: str) -> None:
        duration_ms = int((self._clock() - active.started_at).total_seconds() * 1000)
        active.status = "done" if outcome == "ok" else "error"
        log.info(
            "Session completed: %s %s (%ds)", active.owner, outcome, duration_ms // 1000
        )
        try:
            await self._executor.cleanup(active.session_id)
        except Exception:
            log.exception("Cleanup of %s failed", active.session_id)

        if active.kind == "schedule":
            self._schedule_sessions.pop(active.owner, None)
            self._usage_warned.pop(active.owner, None)
            self._record_schedule_result(active.owner, outcome, duration_ms)
            return

        self._channel_sessions.pop(active.owner, None)
        self._activity.append(
            ActivityRecord(
                ts=self._clock().isoformat(),
                trigger="channel",
                source=active.transport.name if active.transport else "channel",
                status=outcome,
                duration_ms=duration_ms,
                detail=active.owner,
            )
        )
        await self._flush_backlog(active.owner)

    # -- channels ---------------------------------------------------------

    async def channel_tick(self) -> None:
        await self.refresh_channel_sessions()
        for transport in self._transports:
            if not transport.enabled:
                continue
            try:
                await transport.poll()
            except Exception:
                log.exception("Channel %s poll failed", transport.name)

    async def refresh_channel_sessions(self) -> None:
        """Typing indicators, approval prompts, usage warnings and completions."""
        for key, active in list(self._channel_sessions.items()):
            try:
                await self._poll_and_settle(active)
            except Exception:
                log.exception("Refreshing channel session %s failed", key)

    async def dispatch(
        self, transport: ChannelTransport, message: InboundMessage
    ) -> DispatchOutcome:
        """Resume the conversation's session or start a fresh one.

        While the key already has an active session the message is held back
        and dispatched once that session ends.
        """
        key = message.key
        if key in self._channel_sessions:
            backlog = self._backlog.setdefault(key, _Backlog(transport=transport))
            backlog.messages.append(message)
            log.info("%s busy, holding message (%d waiting)", key, len(backlog.messages))
            await transport.send_reply(message.chat_id, BUSY_NOTICE)
            return "backlogged"

        history = self._history.load_recent(key)
        self._history.append(
            ChatMessage(
                ts=message.ts,
                role="user",
                key=key,
                name=message.user_name,
                text=message.text,
            )
        )

        mode = self._keys.approval_mode(key)
        options = SessionOptions(approval_mode=mode)

        session_id = self._keys.get(key)
        if not session_id:
            # expired or never set; a warning for an older session no longer applies
            self._usage_warned.pop(key, None)
        else:
            try:
                await self._resume(session_id, message, options)
            except ResumeInvalid as exc:
                log.info("  %s, starting fresh", exc)
                self.reset_session(key)
            except ExecutorRejection as exc:
                # backend unreachable; keep the key so the next message can resume
                log.error("  %s resume failed: %s", transport.name, exc)
                return await self._dispatch_failed(transport, message, str(exc))
            else:
                log.info("  %s session resumed: %s", transport.name, session_id)
                self._track_channel(transport, message, session_id)
                return "resumed"

        payload = build_channel_message(
            text=message.text,
            transport=transport.name,
            chat_id=message.chat_id,
            user_name=message.user_name,
            history=history,
            attachments=message.attachments,
            reply_instructions=transport.reply_instructions(message.chat_id),
            assistant_name=self._settings.assistant_name,
        )
        try:
            result = await self._executor.start(payload, options)
        except ExecutorRejection as exc:
            log.error("  %s session failed: %s", transport.name, exc)
            return await self._dispatch_failed(transport, message, str(exc))
        except Exception as exc:
            log.exception("  %s session failed", transport.name)
            return await self._dispatch_failed(transport, message, str(exc))

        if result.status == "queued":
            log.info("  %s session queued", transport.name)
            return "queued"

        log.info("  %s session started: %s", transport.name, result.session_id)
        self._keys.set(key, result.session_id, mode)
        self._track_channel(transport, message, result.session_id)
        return "started"

    async def _resume(
        self, session_id: str, message: InboundMessage, options: SessionOptions
    ) -> None:
        text = build_resume_message(message.text, message.attachments)
        if not await self._executor.resume(session_id, text, options):
            raise ResumeInvalid(f"Resume of {session_id} refused")

    async def _dispatch_failed(
        self, transport: ChannelTransport, message: InboundMessage, detail: str
    ) -> DispatchOutcome:
        await transport.send_reply(message.chat_id, COULD_NOT_START)
        self._activity.append(
            ActivityRecord(
                ts=self._clock().isoformat(),
                trigger="channel",
                source=transport.name,
                status="error",
                detail=f"{message.key}: {detail}"[:200],
            )
        )
        return "failed"

    def _track_channel(
        self, transport: ChannelTransport, message: InboundMessage, session_id: str
    ) -> None:
        self._channel_sessions[message.key] = ActiveSession(
            owner=message.key,
            session_id=session_id,
            kind="channel",
            started_at=self._clock(),
            transport=transport,
            chat_id=message.chat_id,
        )

    async def _flush_backlog(self, key: str) -> None:
        backlog = self._backlog.pop(key, None)
        if backlog is None or not backlog.messages:
            return
        first, last = backlog.messages[0], backlog.messages[-1]
        merged = InboundMessage(
            transport=first.transport,
            chat_id=first.chat_id,
            user_name=last.user_name,
            text="\n\n".join(m.text for m in backlog.messages if m.text),
            attachments=[a for m in backlog.messages for a in m.attachments],
            ts=last.ts,
        )
        log.info("Dispatching %d held message(s) for %s", len(backlog.messages), key)
        await self.dispatch(backlog.transport, merged)

    async def respond_to_approval(
        self, key: str, decision: Decision, feedback: str | None = None
    ) -> ApprovalOutcome | None:
        """Answer the pending approval of *key*'s session.

        Returns None when nothing is pending (a stale button press).
        """
        active = self._channel_sessions.get(key)
        if active is None or active.pending is None or not active.pending.request_id:
            return None
        pending = active.pending
        accepted = await self._executor.respond_to_input(
            active.session_id, pending.request_id, decision, feedback
        )
        if accepted:
            # a later request with the same tool must be relayed again
            active.answered_request = pending.request_id
            active.relayed_signature = None
        log.info("%s: %s %s (accepted=%s)", key, decision, pending.target, accepted)
        return ApprovalOutcome(pending=pending, decision=decision, accepted=accepted)

    async def stop_session(self, key: str) -> bool:
        """Abort the conversation's session and forget it."""
        active = self._channel_sessions.pop(key, None)
        session_id = active.session_id if active else self._keys.get(key)
        self._backlog.pop(key, None)
        if session_id is None:
            return False
        await self._executor.cleanup(session_id)
        self.reset_session(key)
        log.info("Session stopped for %s", key)
        return True

    def reset_session(self, key: str) -> None:
        """Forget *key*'s session id so the next message starts fresh."""
        mode = self._keys.approval_mode(key)
        self._usage_warned.pop(key, None)
        self._keys.clear(key)
        if mode != self._settings.default_approval_mode:
            self._keys.set_approval_mode(key, mode)

    def set_approval_mode(self, key: str, mode: ApprovalMode) -> None:
        self._keys.set_approval_mode(key, mode)

    async def session_status(self, key: str) -> str:
        entry = self._keys.get_entry(key)
        mode = MODE_LABELS[entry.approval_mode if entry else self._settings.default_approval_mode]
        if entry is None or not entry.session_id:
            return f"No active session.\nMode: {mode}"

        try:
            result = await self._executor.poll(entry.session_id)
        except TransientPollError:
            status_line = "unknown (backend unreachable)"
            context_line = ""
        else:
            status_line = result.status
            if result.pending_input:
                status_line += f" (waiting: {result.pending_input.kind})"
            context_line = (
                f"\nContext: {round(result.context_usage)}%"
                if result.context_usage is not None
                else ""
            )
        return (
            f"Session: {entry.session_id[:8]}...\nMode: {mode}\n"
            f"Status: {status_line}{context_line}"
        )
