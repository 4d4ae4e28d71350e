from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

MODULE_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_SNAPSHOT_DB_PATH = MODULE_ROOT / "data" / "job_monitor.sqlite"
DEFAULT_JOB_BOARD_BASE_URL = "https://api.ashbyhq.com/posting-api/job-board"
DEFAULT_MISTRAL_API_URL = "https://api.mistral.ai/v1/chat/completions"

RUN_REQUIRED_ENVS = ("MISTRAL_API_KEY",)

# env var -> Settings field; unset or blank values fall back to the field default
_ENV_FIELDS = {
    "MISTRAL_API_KEY": "mistral_api_key",
    "MISTRAL_MODEL": "mistral_model",
    "MISTRAL_API_URL": "mistral_api_url",
    "MISTRAL_MAX_TOKENS": "mistral_max_tokens",
    "MISTRAL_TEMPERATURE": "mistral_temperature",
    "SLACK_BOT_TOKEN": "slack_bot_token",
    "SLACK_CHANNEL": "slack_channel",
    "SLACK_WEBHOOK_URL": "slack_webhook_url",
    "JOB_BOARD_BASE_URL": "job_board_base_url",
    "SNAPSHOT_DB_PATH": "snapshot_db_path",
    "CANDIDATE_PROFILE_PATH": "candidate_profile_path",
    "POLL_INTERVAL_MINUTES": "poll_interval_minutes",
    "DISCOVERY_INTERVAL_MINUTES": "discovery_interval_minutes",
    "QUEUE_CAPACITY": "queue_capacity",
    "QUEUE_CONCURRENCY": "queue_concurrency",
    "SMALL_BATCH_LIMIT": "small_batch_limit",
    "MEDIUM_BATCH_LIMIT": "medium_batch_limit",
    "MEDIUM_CHUNK_SIZE": "medium_chunk_size",
    "LARGE_CHUNK_SIZE": "large_chunk_size",
    "CHUNK_DELAY_SECONDS": "chunk_delay_seconds",
    "DESCRIPTION_CHAR_LIMIT": "description_char_limit",
    "MATCH_THRESHOLD": "match_threshold",
    "MIN_SNAPSHOT_CHARS": "min_snapshot_chars",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "SCORING_TIMEOUT_SECONDS": "scoring_timeout_seconds",
    "FETCH_RETRY_ATTEMPTS": "fetch_retry_attempts",
    "ERROR_ALERT_THRESHOLD": "error_alert_threshold",
    "USER_AGENT": "user_agent",
}


class Settings(BaseModel):
    mistral_api_key: str = ""
    mistral_model: str = "mistral-small-latest"
    mistral_api_url: str = DEFAULT_MISTRAL_API_URL
    mistral_max_tokens: int = Field(default=4000, ge=1)
    mistral_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    slack_bot_token: str = ""
    slack_channel: str = ""
    slack_webhook_url: str = ""
    job_board_base_url: str = DEFAULT_JOB_BOARD_BASE_URL
    snapshot_db_path: Path = Field(default=DEFAULT_SNAPSHOT_DB_PATH)
    candidate_profile_path: Path | None = None
    poll_interval_minutes: float = Field(default=30.0, gt=0)
    discovery_interval_minutes: float = Field(default=60.0, gt=0)
    queue_capacity: int = Field(default=100, ge=1)
    queue_concurrency: int = Field(default=3, ge=1)
    small_batch_limit: int = Field(default=20, ge=1)
    medium_batch_limit: int = Field(default=50, ge=1)
    medium_chunk_size: int = Field(default=25, ge=1)
    large_chunk_size: int = Field(default=20, ge=1)
    chunk_delay_seconds: float = Field(default=1.0, ge=0.0)
    description_char_limit: int = Field(default=500, ge=20)
    match_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    min_snapshot_chars: int = Field(default=20, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    scoring_timeout_seconds: float = Field(default=120.0, gt=0)
    fetch_retry_attempts: int = Field(default=3, ge=1)
    error_alert_threshold: int = Field(default=3, ge=1)
    user_agent: str = "job-monitor/0.1"

    @field_validator("slack_webhook_url")
    @classmethod
    def _validate_webhook_url(cls, value: str) -> str:
        if value and not value.startswith("https://"):
            raise ValueError("SLACK_WEBHOOK_URL must use https://")
        return value

    @model_validator(mode="after")
    def _validate_batch_limits(self) -> "Settings":
        if self.medium_batch_limit < self.small_batch_limit:
            raise ValueError("MEDIUM_BATCH_LIMIT must be >= SMALL_BATCH_LIMIT")
        return self

    @property
    def slack_configured(self) -> bool:
        return bool(self.slack_webhook_url or (self.slack_bot_token and self.slack_channel))


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    payload = {
        field: value
        for key, field in _ENV_FIELDS.items()
        if (value := _env_value(source, key))
    }
    try:
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def assert_slack_configured(settings: Settings) -> None:
    if not settings.slack_configured:
        raise ValueError("Configure SLACK_WEBHOOK_URL or both SLACK_BOT_TOKEN and SLACK_CHANNEL")


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
