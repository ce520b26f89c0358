"""Task payloads handed to the executor for schedule fires and channel messages."""

from __future__ import annotations

import json
from textwrap import dedent

from scoutloop.models import ChatMessage, Schedule

_CHANNEL_RULES = dedent("""\
    1. Work silently. Tool calls, research and browsing are invisible to the user.
    2. Send a final concise response through the channel when done.
    3. Limit to 1-3 messages. Batch information into a single message when possible.
    4. Keep messages short (under ~500 chars) unless detail was requested.
    5. Match conversational tone. This is chat, not a terminal.
    6. If a task takes significant work, send a brief acknowledgment first, then the result.""")


def build_schedule_message(schedule: Schedule) -> str:
    step_lines = []
    for step in schedule.steps:
        line = f"- {step.skill}"
        if step.args:
            line += f" (args: {json.dumps(step.args, sort_keys=True)})"
        step_lines.append(line)

    lines = [
        f"ASSISTANT_TRIGGER=cron:{schedule.name}",
        "",
        f'Run the "{schedule.name}" schedule. Execute these skills in order:',
        *step_lines,
    ]
    if schedule.output:
        lines += ["", f"Deliver the combined output via the {schedule.output} skill."]
    lines += [
        "",
        schedule.prompt or "When done, summarize what you did.",
        "",
        "Execute autonomously. Do not ask questions. Do not produce unnecessary output.",
    ]
    return "\n".join(lines)


def format_history_context(history: list[ChatMessage], assistant_name: str) -> str:
    if not history:
        return ""
    lines = [
        f"[{m.ts}] {m.name if m.role == 'user' else assistant_name}: {m.text}"
        for m in history
    ]
    return "\n".join(["## Recent conversation history", "", *lines, ""])


def format_attachments(attachments: list[str]) -> str:
    if not attachments:
        return ""
    return "\n".join(
        [
            "## Attachments",
            "",
            "The user sent the following files. Use the Read tool to view them:",
            *(f"- {a}" for a in attachments),
            "",
        ]
    )


def build_channel_message(
    *,
    text: str,
    transport: str,
    chat_id: str,
    user_name: str,
    history: list[ChatMessage],
    attachments: list[str],
    reply_instructions: str,
    assistant_name: str = "Scout",
) -> str:
    """Full context for a fresh channel session."""
    channel_meta = json.dumps(
        {"transport": transport, "chatId": chat_id, "userName": user_name}
    )
    return "\n".join(
        [
            f"ASSISTANT_TRIGGER=channel:{transport}",
            f"ASSISTANT_CHANNEL={channel_meta}",
            "",
            "## Channel mode behavior",
            "",
            f"You are responding to a message from a {transport} chat. Follow these rules:",
            _CHANNEL_RULES,
            "",
            format_history_context(history, assistant_name),
            format_attachments(attachments),
            "## New message",
            "",
            f"{user_name}:",
            text,
            "",
            reply_instructions,
            "",
            f"Execute autonomously. Send your response via {transport}, then finish.",
        ]
    )


def build_resume_message(text: str, attachments: list[str]) -> str:
    """A resumed session already holds its context; send only the new turn."""
    if not attachments:
        return text
    listing = "\n".join(f"- {a}" for a in attachments)
    return f"{text}\n\nAttachments:\n{listing}"
