from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class TelegramUser(BaseModel):
    chat_id: str
    name: str = "User"


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "SCOUTLOOP_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "scoutloop" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "scoutloop"
    assistant_name: str = "Scout"
    model: str = "claude-opus-4-6"
    cli_path: Path | None = None
    log_level: str = "INFO"

    executor: Literal["local", "remote"] = "local"
    remote_base_url: str = "http://127.0.0.1:3400"
    remote_project_id: str | None = None

    timezone: str = "Europe/Zurich"
    schedule_tick: float = 30.0  # seconds between schedule checks
    channel_tick: float = 5.0  # seconds between channel polls
    grace_window: float = 60.0  # seconds of continuous errors before a session is lost
    history_limit: int = 20
    context_warn_percent: float = 60.0
    max_consecutive_errors: int = 5
    default_approval_mode: Literal["bypassPermissions", "default", "plan"] = (
        "bypassPermissions"
    )

    telegram_token: str | None = None
    telegram_users: list[TelegramUser] = []

    @property
    def db_path(self) -> Path:
        return self.data / "scoutloop.db"

    @property
    def state_dir(self) -> Path:
        return self.data / "state"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


settings = Settings()
