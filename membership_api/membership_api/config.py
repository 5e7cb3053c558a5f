"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=9000``) or through a ``.env`` file in the
    working directory.  Engine behaviour (lifecycle lengths, windows, job
    cadence) lives in :class:`membership_core.config.Settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Shared secret the payment provider uses to sign webhook bodies.
    webhook_secret: SecretStr | None = None

    # Bearer token required by the operator endpoints (/jobs, /members).
    operator_token: SecretStr | None = None

    # Telegram bot used for operator alerts and member messaging.
    bot_token: SecretStr | None = None
    operator_chat_id: int | None = None
    community_chat_id: int | None = None
    telegram_api_url: str = "https://api.telegram.org"

    # Emit JSON log lines instead of plain text.
    structured_logging: bool = False

    # Run the in-process job scheduler alongside the HTTP server.
    scheduler_enabled: bool = True

    @model_validator(mode="after")
    def _validate_alert_target(self) -> Self:
        """An alert bot without a destination chat is a misconfiguration."""
        if self.bot_token is not None and self.operator_chat_id is None:
            raise ValueError("API_OPERATOR_CHAT_ID is required when API_BOT_TOKEN is set")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
