from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from .config import ConfigError, get_bot_token, get_staff_chat_id, load_config
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StoreSettings(_Section):
    backend: Literal["sqlite", "memory"] = "sqlite"
    path: Path = Path("~/.topicrelay/state.db")


class VerificationSettings(_Section):
    challenge_ttl_s: int = Field(default=300, gt=0)
    verified_ttl_s: int = Field(default=30 * 24 * 3600, gt=0)
    challenge_id_length: int = Field(default=12, ge=8, le=48)
    button_columns: int = Field(default=2, ge=1)
    redelivery_marker_ttl_s: int = Field(default=3600, gt=0)


class RateLimitSettings(_Section):
    message_limit: int = Field(default=45, ge=1)
    message_window_s: int = Field(default=60, gt=0)
    verify_limit: int = Field(default=3, ge=1)
    verify_window_s: int = Field(default=300, gt=0)


class TopicSettings(_Section):
    health_ttl_s: float = Field(default=60.0, ge=0)
    max_repair_attempts: int = Field(default=3, ge=1)
    repair_window_s: int = Field(default=60, gt=0)
    max_title_length: int = Field(default=128, ge=1, le=128)
    max_name_length: int = Field(default=30, ge=1)


class MediaGroupSettings(_Section):
    settle_delay_s: float = Field(default=3.0, ge=0)
    buffer_ttl_s: int = Field(default=60, gt=0)
    stale_after_s: float = Field(default=300.0, gt=0)
    sweep_interval_s: float = Field(default=60.0, ge=0)
    caption_limit: int = Field(default=1024, ge=0)


class CleanupSettings(_Section):
    batch_size: int = Field(default=10, ge=1)
    batch_pause_s: float = Field(default=1.0, ge=0)
    max_display: int = Field(default=20, ge=0)


class RelaySettings(_Section):
    bot_token: SecretStr
    staff_chat_id: int
    api_base: str = DEFAULT_API_BASE
    api_timeout_s: float = Field(default=10.0, gt=0)
    store: StoreSettings = Field(default_factory=StoreSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    rate_limits: RateLimitSettings = Field(default_factory=RateLimitSettings)
    topics: TopicSettings = Field(default_factory=TopicSettings)
    media_groups: MediaGroupSettings = Field(default_factory=MediaGroupSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)


def normalize_api_base(value: str) -> str:
    base = value.strip().rstrip("/") or DEFAULT_API_BASE
    if base.startswith("http://"):
        logger.warning("settings.api_base_upgraded", api_base=base)
        base = "https://" + base.removeprefix("http://")
    if not base.startswith("https://"):
        raise ConfigError(f"Invalid `api_base` {value!r}; expected an https URL.")
    return base


def validate_settings_data(data: dict, *, config_path: Path) -> RelaySettings:
    payload = dict(data)
    payload["bot_token"] = get_bot_token(data, config_path)
    payload["staff_chat_id"] = get_staff_chat_id(data, config_path)
    try:
        settings = RelaySettings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc
    return settings.model_copy(
        update={"api_base": normalize_api_base(settings.api_base)}
    )


def load_settings(path: str | Path | None = None) -> tuple[RelaySettings, Path]:
    data, config_path = load_config(path)
    return validate_settings_data(data, config_path=config_path), config_path
