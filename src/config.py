"""Centralized configuration for the Storage Assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/storage-assistant/<VARIABLE_NAME>``.

Only the record store credentials are hard requirements.  A missing
Anthropic key or Google OAuth credential is reported at call time and
handled by each operation's failure policy.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

SSM_PREFIX = "/storage-assistant"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str = "") -> str:
    """Return a config value from env-var or SSM, or *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {SSM_PREFIX}/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _optional_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
EXTRACTION_MODEL_NAME: str = os.getenv("EXTRACTION_MODEL_NAME", "claude-haiku-4-5")

# ── Record store (Airtable) ─────────────────────────────────────────
AIRTABLE_API_KEY: str = _require_env("AIRTABLE_API_KEY")
AIRTABLE_BASE_ID: str = _require_env("AIRTABLE_BASE_ID")
AIRTABLE_BASE_URL: str = "https://api.airtable.com/v0"

# ── Calendar (Google) ───────────────────────────────────────────────
GOOGLE_CLIENT_ID: str = _optional_env("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET: str = _optional_env("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN: str = _optional_env("GOOGLE_REFRESH_TOKEN")
GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

# Business hours and slot labels are computed in this timezone.
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "UTC")

# ── Outbound calls ──────────────────────────────────────────────────
REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "20"))

# ── Chat sessions (in-process) ──────────────────────────────────────
MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "1000"))
SESSION_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "3600"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
