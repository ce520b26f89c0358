import json
from typing import Any, Literal

from pydantic import BaseModel, Field

ApprovalMode = Literal["bypassPermissions", "default", "plan"]


class SessionKeyEntry(BaseModel):
    key: str
    session_id: str | None = None
    started_date: str
    approval_mode: ApprovalMode = "bypassPermissions"


class ChatMessage(BaseModel):
    ts: str
    role: Literal["user", "assistant"]
    key: str
    name: str
    text: str


class ScheduleStep(BaseModel):
    skill: str
    args: dict[str, Any] | None = None


class ScheduleState(BaseModel):
    last_run_at: str | None = None
    last_status: Literal["ok", "error"] | None = None
    last_summary: str | None = None
    consecutive_errors: int = 0
    max_consecutive_errors: int = 5


class Schedule(BaseModel):
    name: str
    cron: str
    steps: list[ScheduleStep] = Field(default_factory=list)
    output: str | None = None
    prompt: str | None = None
    enabled: bool = True
    state: ScheduleState = Field(default_factory=ScheduleState)

    def definition_key(self) -> str:
        """Serialise the definition (not the run state) for change detection."""
        return json.dumps(
            self.model_dump(exclude={"state"}), sort_keys=True, default=str
        )


class ActivityRecord(BaseModel):
    ts: str
    trigger: Literal["schedule", "channel"]
    source: str
    status: str
    duration_ms: int = 0
    detail: str | None = None
