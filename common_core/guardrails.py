from __future__ import annotations

from common_core.config import settings
from common_core.errors import ConfigurationError


def _must_set(name: str, value: str, min_len: int = 32) -> None:
    if not value:
        raise ConfigurationError("SECRET_MISSING", f"{name} is required")
    if value.strip().upper() == "CHANGE_ME":
        raise ConfigurationError("SECRET_PLACEHOLDER", f"{name} must not be CHANGE_ME")
    if len(value) < min_len:
        raise ConfigurationError("SECRET_TOO_SHORT", f"{name} must be at least {min_len} chars")


def validate_runtime_secrets() -> None:
    _must_set("JWT_SECRET", settings.jwt_secret, 32)
    _must_set("CRON_SECRET", settings.cron_secret, 32)
    if settings.slack_enabled:
        _must_set("SLACK_BOT_TOKEN", settings.slack_bot_token, 8)
