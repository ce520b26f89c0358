"""Approval modes and the allow/deny rules handed to executors."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

from scoutloop.models import ApprovalMode

MODE_LABELS: dict[str, str] = {
    "bypassPermissions": "yolo (auto-approve everything)",
    "default": "careful (approve writes, auto-approve reads)",
    "plan": "readonly (read-only, no mutations)",
}


_SEPARATORS = re.compile(r"\|\||&&|\$\(|[;|&\n`()]")
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_WRAPPERS = {"env", "nohup", "time", "nice", "command", "exec", "xargs"}


def command_segments(command: str) -> list[str]:
    """Split a shell line into the simple commands it runs.

    Each segment loses leading variable assignments and wrappers such as
    ``env`` or ``xargs``, and its program is reduced to the base name, so
    ``cd /tmp && FOO=1 /usr/bin/curl x`` yields ``["cd /tmp", "curl x"]``.
    """
    segments = []
    for part in _SEPARATORS.split(command):
        words = part.split()
        while words and (words[0] in _WRAPPERS or _ASSIGNMENT.match(words[0])):
            words.pop(0)
        if not words:
            continue
        words[0] = words[0].rsplit("/", 1)[-1]
        segments.append(" ".join(words))
    return segments


@dataclass
class ApprovalRules:
    """Glob patterns matched against a shell command.

    Evaluation order is deny, then allow, then the session's approval mode.
    Deny patterns are tried on the whole line and on every simple command in
    it; allow patterns must cover the whole line.
    """

    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.allow or self.deny)

    def decide(self, command: str) -> str | None:
        """Return ``"deny"``, ``"allow"`` or None when no rule matches."""
        command = command.strip()
        candidates = [command, *command_segments(command)]
        for pattern in self.deny:
            if any(fnmatchcase(c, pattern) for c in candidates):
                return "deny"
        if any(fnmatchcase(command, pattern) for pattern in self.allow):
            return "allow"
        return None

    def to_payload(self) -> dict[str, list[str]]:
        payload: dict[str, list[str]] = {}
        if self.allow:
            payload["allow"] = list(self.allow)
        if self.deny:
            payload["deny"] = list(self.deny)
        return payload


# Scheduled runs read untrusted content (mail, feeds, web pages), so injected
# instructions must not be able to open connections, run inline code, escalate
# privileges or read credentials.
_DENIED_PROGRAMS = [
    # network
    "curl",
    "wget",
    "nc",
    "ncat",
    "netcat",
    "socat",
    "telnet",
    "ssh",
    "scp",
    "sftp",
    "ftp",
    # inline code
    "python* -c",
    "node -e",
    "perl -e",
    "ruby -e",
    "bash -c",
    "sh -c",
    "zsh -c",
    "eval",
    # privilege
    "sudo",
    "su",
    "doas",
]


def _anywhere(program: str) -> list[str]:
    # Also covers absolute paths and later commands of a chain for backends
    # that glob the whole line without splitting it.
    return [f"{program} *", f"* {program} *", f"*/{program} *"]


SCHEDULE_DENY_PATTERNS = [
    *(pattern for program in _DENIED_PROGRAMS for pattern in _anywhere(program)),
    "sh",
    "bash",
    "zsh",
    "* | sh",
    "* | bash",
    "rsync *:*",
    "*/dev/tcp/*",
    "*/dev/udp/*",
    "*~/.ssh*",
    "*.aws/credentials*",
    "*.netrc*",
    "*id_rsa*",
    "*id_ed25519*",
    "security find-*-password*",
]

# Agent tools that reach the network without going through the shell.
SCHEDULE_DENIED_TOOLS = ["WebFetch", "WebSearch"]


@dataclass
class SessionOptions:
    """Execution profile passed to :meth:`SessionExecutor.start` / ``resume``."""

    approval_mode: ApprovalMode = "bypassPermissions"
    rules: ApprovalRules = field(default_factory=ApprovalRules)
    denied_tools: list[str] = field(default_factory=list)
    cwd: str | None = None


def schedule_profile(cwd: str | None = None) -> SessionOptions:
    return SessionOptions(
        approval_mode="bypassPermissions",
        rules=ApprovalRules(deny=list(SCHEDULE_DENY_PATTERNS)),
        denied_tools=list(SCHEDULE_DENIED_TOOLS),
        cwd=cwd,
    )
