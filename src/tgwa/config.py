"""Application runtime configuration.

All settings come from constructor kwargs, `TGWA_*` environment variables, or
an optional `.env` file in the working directory.
"""

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

type SessionBackend = Literal["none", "file", "env", "http"]
type MatchMode = Literal["exact", "substring"]
type OverflowPolicyName = Literal["drop_oldest", "drop_newest", "reject"]


class Config(BaseSettings):
    """Settings loaded from constructor kwargs and `TGWA_*` environment variables.

    Invariant:
        Path settings are normalized to absolute paths at init time.
        Each `session_backend` has its backend-specific fields set
        (`session_file` for `file`, `session_url` for `http`).
        `reconnect_min_seconds` is never below one second.
    """

    model_config = SettingsConfigDict(
        env_prefix="TGWA_",
        env_file=".env",
        extra="ignore",
    )

    # Inbound (Telegram)
    telegram_bot_token: str | None = None
    telegram_admin_id: int | None = None
    telegram_source_chat_id: int | None = None
    telegram_poll_timeout_seconds: int = 30

    # Outbound (WhatsApp gateway)
    whatsapp_api_url: str = "http://localhost:3000"
    whatsapp_api_key: str | None = None
    whatsapp_session: str = "default"
    whatsapp_status_poll_seconds: float = 2.0
    whatsapp_target_name: str = ""
    whatsapp_match: MatchMode = "exact"

    # Dispatch
    concurrent_messages: int = 5
    batch_delay_seconds: float = 0.1
    stagger_seconds: float = 0.01
    queue_poll_seconds: float = 1.0
    send_timeout_seconds: float = 30.0
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    max_attempts: int | None = 10
    max_queue_size: int | None = 10_000
    overflow_policy: OverflowPolicyName = "drop_oldest"

    # Media
    forward_media: bool = True
    media_max_bytes: int = 100 * 1024 * 1024
    media_fetch_timeout_seconds: float = 30.0

    # Connection lifecycle
    reconnect_min_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0
    escalate_after: int = 5

    # Session persistence
    session_backend: SessionBackend = "none"
    session_dir: Path = Path("./whatsapp_session")
    session_file: Path | None = None
    session_env_var: str = "WHATSAPP_SESSION"
    session_url: str | None = None
    session_token: str | None = None
    session_save_delay_seconds: float = 5.0
    session_backup_interval_seconds: float = 0.0

    @field_validator("session_dir", "session_file")
    @classmethod
    def _normalize_path_settings(cls, value: Path | None) -> Path | None:
        """Normalize path-like settings to absolute paths."""

        if value is None:
            return None
        return value.expanduser().resolve()

    @field_validator(
        "concurrent_messages",
        "telegram_poll_timeout_seconds",
        "media_max_bytes",
    )
    @classmethod
    def _require_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be > 0; got {value}")
        return value

    @field_validator("max_attempts", "max_queue_size")
    @classmethod
    def _require_positive_cap(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError(f"must be > 0 or unset; got {value}")
        return value

    @field_validator("reconnect_min_seconds")
    @classmethod
    def _floor_reconnect_delay(cls, value: float) -> float:
        return max(1.0, value)

    @model_validator(mode="after")
    def _validate_session_backend(self) -> "Config":
        """Require the backend-specific session settings."""

        if self.session_backend == "file" and self.session_file is None:
            raise ValueError("session_backend='file' requires session_file")
        if self.session_backend == "http" and not self.session_url:
            raise ValueError("session_backend='http' requires session_url")
        if self.reconnect_max_seconds < self.reconnect_min_seconds:
            raise ValueError(
                "reconnect_max_seconds must be >= reconnect_min_seconds"
            )
        return self
