from __future__ import annotations

import base64

from scoutloop.config import Settings
from scoutloop.executors.base import (
    Decision,
    PendingInput,
    PollResult,
    SessionExecutor,
    StartResult,
)

__all__ = [
    "Decision",
    "PendingInput",
    "PollResult",
    "SessionExecutor",
    "StartResult",
    "create_executor",
    "project_id_for",
]


def project_id_for(path: str) -> str:
    """Control-plane project id: the base64url-encoded project directory."""
    return base64.urlsafe_b64encode(path.encode()).decode().rstrip("=")


def create_executor(settings: Settings) -> SessionExecutor:
    """Build the backend named by ``settings.executor``."""
    if settings.executor == "remote":
        from scoutloop.executors.remote import RemoteExecutor

        project_id = settings.remote_project_id or project_id_for(str(settings.data))
        return RemoteExecutor(settings.remote_base_url, project_id)

    from scoutloop.executors.local import LocalExecutor

    return LocalExecutor(
        cwd=settings.data,
        model=settings.model,
        cli_path=settings.cli_path,
    )
