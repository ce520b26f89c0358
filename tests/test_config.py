"""Tests for Settings configuration and .env file loading."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from scoutloop.config import Settings


class TestSettingsDefaults:
    """Test Settings default values in isolated environment."""

    def test_settings_defaults_no_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings uses defaults when no .env file exists."""
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.data == Path.home() / ".local" / "share" / "scoutloop"
        assert settings.executor == "local"
        assert settings.grace_window == 60.0
        assert settings.max_consecutive_errors == 5
        assert settings.default_approval_mode == "bypassPermissions"
        assert settings.telegram_token is None
        assert settings.telegram_users == []

    def test_settings_derived_paths(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test db_path and state_dir live under the data directory."""
        monkeypatch.chdir(tmp_path)

        settings = Settings(data=tmp_path / "d")

        assert settings.db_path == tmp_path / "d" / "scoutloop.db"
        assert settings.state_dir == tmp_path / "d" / "state"

    def test_settings_tzinfo(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)

        settings = Settings(timezone="America/New_York")

        assert settings.tzinfo == ZoneInfo("America/New_York")


class TestSettingsEnvFileLoading:
    """Test Settings loads from .env file in CWD."""

    def test_settings_loads_custom_data_path_from_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings loads SCOUTLOOP_DATA from .env in CWD."""
        custom_data = tmp_path / "custom_data"
        custom_data.mkdir()
        (tmp_path / ".env").write_text(f"SCOUTLOOP_DATA={custom_data}\n")
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.data == custom_data

    def test_settings_loads_multiple_vars_from_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings loads executor and remote settings together."""
        (tmp_path / ".env").write_text(
            dedent("""\
                SCOUTLOOP_EXECUTOR=remote
                SCOUTLOOP_REMOTE_BASE_URL=http://example.test:9000
                SCOUTLOOP_GRACE_WINDOW=90
                """)
        )
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.executor == "remote"
        assert settings.remote_base_url == "http://example.test:9000"
        assert settings.grace_window == 90.0

    def test_settings_loads_telegram_users_as_json(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text(
            "SCOUTLOOP_TELEGRAM_TOKEN=abc\n"
            'SCOUTLOOP_TELEGRAM_USERS=[{"chat_id": "42", "name": "Robin"}]\n'
        )
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.telegram_token == "abc"
        assert [(u.chat_id, u.name) for u in settings.telegram_users] == [("42", "Robin")]


class TestSettingsEnvVarOverride:
    """Test environment variables override .env file values."""

    def test_env_var_overrides_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("SCOUTLOOP_ASSISTANT_NAME=from-env-file\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SCOUTLOOP_ASSISTANT_NAME", "from-env-var")

        settings = Settings()

        assert settings.assistant_name == "from-env-var"

    def test_settings_ignores_unprefixed_vars(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test Settings ignores ASSISTANT_NAME (no SCOUTLOOP_ prefix)."""
        (tmp_path / ".env").write_text("ASSISTANT_NAME=should-be-ignored\n")
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.assistant_name == "Scout"


class TestSettingsValidation:
    def test_unknown_executor_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SCOUTLOOP_EXECUTOR", "carrier-pigeon")

        with pytest.raises(ValidationError):
            Settings()

    def test_unknown_approval_mode_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        with pytest.raises(ValidationError):
            Settings(default_approval_mode="anything-goes")
