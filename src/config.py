"""Centralized configuration for the lead-conversion agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/lead-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/lead-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_secret(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /lead-agent/{name} (AWS)."
    )


def _optional_secret(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when the secret is absent."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-haiku-4-5")
LLM_TEMPERATURE: float = _env_float("LLM_TEMPERATURE", 0.7)
MAX_REPLY_TOKENS: int = _env_int("MAX_REPLY_TOKENS", 300)
HISTORY_MESSAGE_LIMIT: int = _env_int("HISTORY_MESSAGE_LIMIT", 10)
CALL_TRANSCRIPT_LIMIT: int = _env_int("CALL_TRANSCRIPT_LIMIT", 20)

# ── Cost budgeting ──────────────────────────────────────────────────
# Prices are USD per million tokens for MODEL_NAME.
INPUT_PRICE_PER_MILLION: float = _env_float("INPUT_PRICE_PER_MILLION", 1.00)
OUTPUT_PRICE_PER_MILLION: float = _env_float("OUTPUT_PRICE_PER_MILLION", 5.00)
MAX_COST_PER_CALL_USD: float = _env_float("MAX_COST_PER_CALL_USD", 0.01)
LARGE_PROMPT_WARNING_TOKENS: int = _env_int("LARGE_PROMPT_WARNING_TOKENS", 5000)
OPTIMIZED_PROMPT_MAX_CHARS: int = _env_int("OPTIMIZED_PROMPT_MAX_CHARS", 2000)
COST_ALERT_AVERAGE_USD: float = _env_float("COST_ALERT_AVERAGE_USD", 0.005)
COST_ALERT_TOTAL_USD: float = _env_float("COST_ALERT_TOTAL_USD", 10.0)

# ── Relational store (Supabase PostgREST) ───────────────────────────
SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY: str | None = _optional_secret("SUPABASE_SERVICE_KEY")

# ── Messaging (Twilio WhatsApp) ─────────────────────────────────────
TWILIO_ACCOUNT_SID: str | None = _optional_secret("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str | None = _optional_secret("TWILIO_AUTH_TOKEN")
TWILIO_WHATSAPP_NUMBER: str | None = os.getenv("TWILIO_WHATSAPP_NUMBER")
TWILIO_VALIDATE_SIGNATURE: bool = _env_bool("TWILIO_VALIDATE_SIGNATURE", False)

# ── Calendar (Google Calendar API v3) ───────────────────────────────
GOOGLE_CLIENT_ID: str | None = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET: str | None = _optional_secret("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN: str | None = _optional_secret("GOOGLE_REFRESH_TOKEN")
GOOGLE_CALENDAR_ID: str = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
# 1 == a single round trip; provider failures surface immediately.
CALENDAR_MAX_ATTEMPTS: int = _env_int("CALENDAR_MAX_ATTEMPTS", 1)

# ── Booking & reminders ─────────────────────────────────────────────
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "Europe/London")
BOOKING_DURATION_MINUTES: int = _env_int("BOOKING_DURATION_MINUTES", 30)
OWNER_NOTIFICATION_PHONE: str | None = os.getenv("OWNER_NOTIFICATION_PHONE")
REMINDER_BATCH_SIZE: int = _env_int("REMINDER_BATCH_SIZE", 50)
CRON_SECRET: str | None = _optional_secret("CRON_SECRET")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
