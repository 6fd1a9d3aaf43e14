from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 60_000
MIN_POLL_INTERVAL_MS = 5_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    bot_token: str = Field(validation_alias=AliasChoices("STRATEGY_APPS_ADMIN_BOT_TOKEN", "BOT_TOKEN"))
    backend_api_key: str = Field(validation_alias=AliasChoices("ADMIN_BACKEND_API_KEY", "BACKEND_API_KEY"))
    poll_chat_ids: str = Field(validation_alias=AliasChoices("ADMIN_POLL_CHAT_IDS", "POLL_CHAT_IDS"))

    backend_api_url: str = "http://localhost:3011"
    ton_api_base_url: str = "https://tonapi.io/v2"
    ton_api_key: str = ""

    poll_interval_ms: int = Field(
        default=DEFAULT_POLL_INTERVAL_MS,
        validation_alias=AliasChoices("ADMIN_POLL_INTERVAL_MS", "POLL_INTERVAL_MS"),
    )
    poll_timeout_sec: float = 15.0
    http_timeout_sec: float = 10.0
    http_retries: int = 2

    data_dir: str = Field(default="data", validation_alias=AliasChoices("ADMIN_DATA_DIR", "DATA_DIR"))
    log_level: str = "INFO"

    @field_validator("poll_interval_ms", mode="before")
    @classmethod
    def _floor_poll_interval(cls, value):
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = 0
        if parsed < MIN_POLL_INTERVAL_MS:
            logger.warning(
                "poll_interval_invalid",
                extra={"event": "poll_interval_invalid", "error": f"{value!r} below {MIN_POLL_INTERVAL_MS}"},
            )
            return DEFAULT_POLL_INTERVAL_MS
        return parsed

    @field_validator("poll_chat_ids")
    @classmethod
    def _require_chat_ids(cls, value: str) -> str:
        if not _parse_chat_ids(value):
            raise ValueError("ADMIN_POLL_CHAT_IDS not set or empty")
        return value

    def chat_ids_list(self) -> list[int]:
        return _parse_chat_ids(self.poll_chat_ids)

    def data_path(self) -> Path:
        return Path(self.data_dir).resolve()


def _parse_chat_ids(raw: str) -> list[int]:
    out: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.append(int(part))
        except ValueError:
            continue
    return out


@lru_cache
def get_settings() -> Settings:
    return Settings()
