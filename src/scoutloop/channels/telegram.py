"""Telegram Bot API transport."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from scoutloop.channels import ChannelHost, InboundMessage, channel_key
from scoutloop.config import TelegramUser
from scoutloop.errors import ScoutloopError
from scoutloop.executors.base import PendingInput
from scoutloop.permissions import MODE_LABELS

log = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


class TelegramApiError(ScoutloopError):
    """The Bot API answered ``ok: false``."""


@dataclass
class _Prompt:
    signature: tuple[str, str]
    message_id: int | None
    label: str


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *text* into chunks Telegram accepts, preferring line breaks."""
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def _tool_label(pending: PendingInput) -> str:
    return pending.target or "Tool"


class TelegramTransport:
    name = "telegram"

    def __init__(
        self,
        token: str,
        users: list[TelegramUser],
        state_dir: Path,
        host: ChannelHost | None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.users = {u.chat_id: u for u in users}
        self.state_dir = state_dir
        self.host = host
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._offset_file = state_dir / "telegram-offset.json"
        self._offset = self._load_offset()
        self._prompts: dict[str, _Prompt] = {}
        self._commands: dict[str, tuple[str, Callable[[str], Awaitable[None]]]] = {
            "/new": ("Start a fresh session", self._cmd_new),
            "/stop": ("Abort the current session", self._cmd_stop),
            "/yolo": ("Auto-approve everything (default)", self._cmd_yolo),
            "/careful": ("Auto-approve reads, prompt for writes", self._cmd_careful),
            "/readonly": ("Read-only, no mutations allowed", self._cmd_readonly),
            "/status": ("Show current session info", self._cmd_status),
            "/help": ("List available commands", self._cmd_help),
        }

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.users)

    # -- Bot API ----------------------------------------------------------

    async def _call(self, method: str, **params: Any) -> Any:
        response = await self._client.post(
            f"{API_BASE}/bot{self.token}/{method}", json=params
        )
        data = response.json()
        if not data.get("ok"):
            raise TelegramApiError(
                f"{method}: {data.get('description', 'unknown error')}"
            )
        return data.get("result")

    def _load_offset(self) -> int | None:
        try:
            return json.loads(self._offset_file.read_text())["offset"]
        except (OSError, ValueError, KeyError):
            return None

    def _save_offset(self) -> None:
        self._offset_file.parent.mkdir(parents=True, exist_ok=True)
        self._offset_file.write_text(json.dumps({"offset": self._offset}))

    async def _download(self, file_id: str, dest: Path) -> Path:
        info = await self._call("getFile", file_id=file_id)
        response = await self._client.get(
            f"{API_BASE}/file/bot{self.token}/{info['file_path']}"
        )
        response.raise_for_status()
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(response.content)
        return dest

    # -- outbound ---------------------------------------------------------

    async def send_reply(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text):
            await self._call("sendMessage", chat_id=chat_id, text=chunk)

    async def send_typing(self, chat_id: str) -> None:
        try:
            await self._call("sendChatAction", chat_id=chat_id, action="typing")
        except (httpx.HTTPError, TelegramApiError) as exc:
            log.debug("Typing indicator failed for %s: %s", chat_id, exc)

    async def send_approval_prompt(
        self, chat_id: str, pending: PendingInput, interactive: bool
    ) -> None:
        label = _tool_label(pending)
        if interactive:
            detail = f"\n{pending.prompt[:200]}" if pending.prompt else ""
            sent = await self._call(
                "sendMessage",
                chat_id=chat_id,
                text=f"🔧 {label}{detail}",
                reply_markup={
                    "inline_keyboard": [
                        [
                            {"text": "✓ Approve", "callback_data": "approve"},
                            {"text": "✗ Deny", "callback_data": "deny"},
                        ]
                    ]
                },
            )
            message_id = sent["message_id"]
        else:
            await self.send_reply(
                chat_id,
                f"⏳ Waiting for approval ({label}). Respond where the session "
                "runs, or send /yolo to auto-approve.",
            )
            message_id = None
        self._prompts[chat_id] = _Prompt(pending.signature, message_id, label)

    async def approval_resolved(self, chat_id: str, pending: PendingInput) -> None:
        prompt = self._prompts.pop(chat_id, None)
        if prompt is None or prompt.message_id is None:
            return
        try:
            await self._call(
                "editMessageText",
                chat_id=chat_id,
                message_id=prompt.message_id,
                text=f"✓ {prompt.label}: resolved",
            )
        except (httpx.HTTPError, TelegramApiError) as exc:
            log.debug("Could not edit approval prompt: %s", exc)

    def reply_instructions(self, chat_id: str) -> str:
        return (
            "To reply, run:\n"
            f'scoutloop send --to {channel_key(self.name, chat_id)} --message "your reply"'
        )

    # -- inbound ----------------------------------------------------------

    async def poll(self) -> None:
        params: dict[str, Any] = {"timeout": 0, "limit": 10}
        if self._offset is not None:
            params["offset"] = self._offset
        updates = await self._call("getUpdates", **params)

        for update in updates:
            self._offset = update["update_id"] + 1
            self._save_offset()
            try:
                if "callback_query" in update:
                    await self._handle_callback(update["callback_query"])
                elif "message" in update:
                    await self._handle_message(update["message"])
            except Exception:
                log.exception("Telegram: handling update %s failed", update["update_id"])

    async def _handle_callback(self, callback: dict[str, Any]) -> None:
        message = callback.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        action = callback.get("data")
        try:
            if chat_id in self.users and action in ("approve", "deny"):
                outcome = await self.host.respond_to_approval(
                    channel_key(self.name, chat_id), action
                )
                prompt = self._prompts.pop(chat_id, None)
                if outcome is None:
                    text = "⚠ Already handled"
                else:
                    label = _tool_label(outcome.pending)
                    text = (
                        f"✓ Approved: {label}" if action == "approve" else f"✗ Denied: {label}"
                    )
                    if not outcome.accepted:
                        text = f"⚠ {text} (already handled)"
                message_id = message.get("message_id") or (prompt and prompt.message_id)
                if message_id:
                    await self._call(
                        "editMessageText", chat_id=chat_id, message_id=message_id, text=text
                    )
        finally:
            await self._call("answerCallbackQuery", callback_query_id=callback["id"])

    async def _handle_message(self, msg: dict[str, Any]) -> None:
        chat_id = str(msg["chat"]["id"])
        text = msg.get("text") or msg.get("caption") or ""
        has_media = any(k in msg for k in ("photo", "document", "voice", "audio"))
        if not text and not has_media:
            return

        user = self.users.get(chat_id)
        if user is None:
            log.info("Telegram: ignoring message from unauthorized chat %s", chat_id)
            return
        if text == "/start":
            return

        command = text.strip().split(maxsplit=1)[0].lower() if text.strip() else ""
        if command in self._commands:
            await self._commands[command][1](chat_id)
            return

        attachments, note = await self._collect_attachments(chat_id, msg)
        log.info(
            "Telegram: message from %s: %s%s", user.name, (text or "(no text)")[:80], note
        )
        sent_at = datetime.fromtimestamp(msg.get("date", 0), tz=timezone.utc)
        await self.send_typing(chat_id)
        await self.host.dispatch(
            self,
            InboundMessage(
                transport=self.name,
                chat_id=chat_id,
                user_name=user.name,
                text=text + note,
                attachments=attachments,
                ts=sent_at.isoformat(),
            ),
        )

    async def _collect_attachments(
        self, chat_id: str, msg: dict[str, Any]
    ) -> tuple[list[str], str]:
        stamp = (
            datetime.fromtimestamp(msg.get("date", 0), tz=timezone.utc)
            .isoformat()
            .replace(":", "-")
        )
        dest_dir = self.state_dir / "attachments" / chat_id
        attachments: list[str] = []
        note = ""

        if msg.get("photo"):
            note = " [photo attached]"
            largest = msg["photo"][-1]
            dest = dest_dir / f"{stamp}-photo.jpg"
            await self._try_download(largest["file_id"], dest, attachments)
        elif msg.get("document"):
            doc = msg["document"]
            filename = doc.get("file_name") or "document.bin"
            note = f" [file: {filename}]"
            await self._try_download(doc["file_id"], dest_dir / f"{stamp}-{filename}", attachments)
        elif msg.get("voice") or msg.get("audio"):
            note = " [audio message]"
        return attachments, note

    async def _try_download(self, file_id: str, dest: Path, into: list[str]) -> None:
        try:
            into.append(str(await self._download(file_id, dest)))
            log.info("  Downloaded %s", dest)
        except (httpx.HTTPError, TelegramApiError, OSError) as exc:
            log.warning("  Failed to download %s: %s", dest.name, exc)

    # -- commands ---------------------------------------------------------

    def _key(self, chat_id: str) -> str:
        return channel_key(self.name, chat_id)

    async def _cmd_new(self, chat_id: str) -> None:
        self.host.reset_session(self._key(chat_id))
        self._prompts.pop(chat_id, None)
        await self.send_reply(chat_id, "Session reset. Next message starts fresh.")

    async def _cmd_stop(self, chat_id: str) -> None:
        self._prompts.pop(chat_id, None)
        if await self.host.stop_session(self._key(chat_id)):
            await self.send_reply(chat_id, "Session stopped.")
        else:
            await self.send_reply(chat_id, "No active session.")

    async def _cmd_yolo(self, chat_id: str) -> None:
        self.host.set_approval_mode(self._key(chat_id), "bypassPermissions")
        await self.send_reply(chat_id, f"Mode: {MODE_LABELS['bypassPermissions']}.")

    async def _cmd_careful(self, chat_id: str) -> None:
        self.host.set_approval_mode(self._key(chat_id), "default")
        await self.send_reply(chat_id, f"Mode: {MODE_LABELS['default']}.")

    async def _cmd_readonly(self, chat_id: str) -> None:
        self.host.set_approval_mode(self._key(chat_id), "plan")
        await self.send_reply(chat_id, f"Mode: {MODE_LABELS['plan']}.")

    async def _cmd_status(self, chat_id: str) -> None:
        await self.send_reply(chat_id, await self.host.session_status(self._key(chat_id)))

    async def _cmd_help(self, chat_id: str) -> None:
        lines = [f"{cmd}: {desc}" for cmd, (desc, _) in self._commands.items()]
        await self.send_reply(chat_id, "\n".join(lines))
