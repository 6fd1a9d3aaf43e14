from __future__ import annotations

import pytest
from pydantic import ValidationError as SettingsError

from capadmin.core.config import DEFAULT_POLL_INTERVAL_MS, Settings


@pytest.fixture
def base_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STRATEGY_APPS_ADMIN_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("ADMIN_BACKEND_API_KEY", "secret")
    monkeypatch.setenv("ADMIN_POLL_CHAT_IDS", "-1001, 42,,junk")
    return monkeypatch


def test_chat_ids_are_parsed(base_env) -> None:
    settings = Settings()
    assert settings.chat_ids_list() == [-1001, 42]
    assert settings.poll_interval_ms == DEFAULT_POLL_INTERVAL_MS
    assert settings.backend_api_url == "http://localhost:3011"


@pytest.mark.parametrize(("raw", "expected"), [("2000", DEFAULT_POLL_INTERVAL_MS), ("abc", DEFAULT_POLL_INTERVAL_MS), ("15000", 15000)])
def test_poll_interval_floor(base_env, raw, expected) -> None:
    base_env.setenv("ADMIN_POLL_INTERVAL_MS", raw)
    assert Settings().poll_interval_ms == expected


def test_missing_chat_ids_fail(base_env) -> None:
    base_env.setenv("ADMIN_POLL_CHAT_IDS", " , ")
    with pytest.raises(SettingsError):
        Settings()


def test_fallback_env_names(base_env) -> None:
    base_env.delenv("STRATEGY_APPS_ADMIN_BOT_TOKEN")
    base_env.setenv("BOT_TOKEN", "999:zzz")
    assert Settings().bot_token == "999:zzz"
