"""Tests for channel discovery."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scoutloop.channels import InboundMessage, channel_key, load_transports
from scoutloop.channels.telegram import TelegramTransport
from scoutloop.config import Settings, TelegramUser


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.chdir(tmp_path)
    return Settings(data=tmp_path)


def test_channel_key() -> None:
    assert channel_key("telegram", "42") == "telegram-42"
    assert InboundMessage(transport="telegram", chat_id="42", user_name="R", text="").key == (
        "telegram-42"
    )


def test_no_transports_without_configuration(settings: Settings) -> None:
    """Test that load_transports is empty when nothing is configured."""
    with patch("scoutloop.channels.entry_points", return_value=[]):
        assert load_transports(settings, host=None) == []


def test_telegram_transport_built_from_settings(settings: Settings) -> None:
    settings.telegram_token = "123:abc"
    settings.telegram_users = [TelegramUser(chat_id="42", name="Robin")]
    host = MagicMock()

    with patch("scoutloop.channels.entry_points", return_value=[]):
        transports = load_transports(settings, host)

    assert len(transports) == 1
    telegram = transports[0]
    assert isinstance(telegram, TelegramTransport)
    assert telegram.host is host
    assert telegram.state_dir == settings.state_dir
    assert telegram.enabled


def test_entry_point_factories_are_loaded(settings: Settings) -> None:
    """Test that registered channel factories receive settings and host."""
    custom = MagicMock(name="custom-transport")
    factory = MagicMock(return_value=custom)
    good = MagicMock()
    good.name = "custom"
    good.load.return_value = factory
    bad = MagicMock()
    bad.name = "broken"
    bad.load.side_effect = ImportError("missing dependency")
    host = MagicMock()

    with patch("scoutloop.channels.entry_points", return_value=[bad, good]) as eps:
        transports = load_transports(settings, host)

    eps.assert_called_once_with(group="scoutloop.channels")
    factory.assert_called_once_with(settings, host)
    assert transports == [custom]
