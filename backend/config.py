from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./wealthtracker.db"
DEFAULT_JWT_SECRET = "wealthtracker-development-secret-change-me"
DEFAULT_MAIL_SENDER = "WealthTracker <no-reply@wealthtracker.local>"
FALLBACK_CURRENCY = "USD"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _int_value(raw: str | None, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer setting value %r", raw)
        return default


def _currency_value(raw: str | None) -> str:
    try:
        return normalize_currency(raw or FALLBACK_CURRENCY)
    except ValueError:
        return FALLBACK_CURRENCY


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from the process environment."""

    database_url: str = DEFAULT_DATABASE_URL
    jwt_secret: str = DEFAULT_JWT_SECRET
    access_token_minutes: int = 60
    verification_token_minutes: int = 15
    frontend_url: str = "http://localhost:3000"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    mail_sender: str = DEFAULT_MAIL_SENDER
    default_currency: str = FALLBACK_CURRENCY
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            jwt_secret=env.get("JWT_SECRET", DEFAULT_JWT_SECRET),
            access_token_minutes=_int_value(env.get("ACCESS_TOKEN_MINUTES"), 60),
            verification_token_minutes=_int_value(env.get("VERIFICATION_TOKEN_MINUTES"), 15),
            frontend_url=env.get("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            smtp_host=env.get("SMTP_HOST") or None,
            smtp_port=_int_value(env.get("SMTP_PORT"), 587),
            smtp_user=env.get("SMTP_USER") or None,
            smtp_password=env.get("SMTP_PASSWORD") or None,
            mail_sender=env.get("MAIL_FROM", DEFAULT_MAIL_SENDER),
            default_currency=_currency_value(env.get("DEFAULT_CURRENCY")),
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.access_token_minutes)

    @property
    def verification_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.verification_token_minutes)

    @property
    def uses_default_secret(self) -> bool:
        return self.jwt_secret == DEFAULT_JWT_SECRET
