"""Environment-driven settings for the member intranet service."""

from __future__ import annotations

import os

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


CONTENT_DB_URL = _require_env("CONTENT_DB_URL")
USER_DB_URL = _require_env("USER_DB_URL")

LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:8080,http://localhost:8080",
)
CORS_ALLOW_CREDENTIALS = _env_bool("CORS_ALLOW_CREDENTIALS", True)
if "*" in CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    CORS_ALLOW_CREDENTIALS = False

MAIL_BATCH_SIZE = max(1, _env_int("MAIL_BATCH_SIZE", 200))
MAIL_BATCH_DELAY_MINUTES = max(1, _env_int("MAIL_BATCH_DELAY_MINUTES", 60))
MAIL_CLAIM_TTL_MINUTES = max(1, _env_int("MAIL_CLAIM_TTL_MINUTES", 15))
MAIL_QUEUE_SCHEDULER_ENABLED = _env_bool("MAIL_QUEUE_SCHEDULER_ENABLED", True)
MAIL_QUEUE_POLL_SECONDS = max(10, _env_int("MAIL_QUEUE_POLL_SECONDS", 300))

SMTP_CONFIG = {
    "host": (os.environ.get("SMTP_HOST") or "localhost").strip(),
    "port": _env_int("SMTP_PORT", 587),
    "user": (os.environ.get("SMTP_USER") or "").strip(),
    "password": os.environ.get("SMTP_PASSWORD") or "",
    "use_tls": _env_bool("SMTP_USE_TLS", True),
    "timeout": _env_int("SMTP_TIMEOUT_SECONDS", 10),
}
MAIL_FROM = (os.environ.get("MAIL_FROM") or "intranet@example.org").strip()
ORGANIZATION_NAME = (os.environ.get("ORGANIZATION_NAME") or "Intranet").strip()

INVENTORY_API_BASE_URL = (os.environ.get("INVENTORY_API_BASE_URL") or "").strip()
INVENTORY_API_TOKEN = (os.environ.get("INVENTORY_API_TOKEN") or "").strip()
INVENTORY_API_AUTH_HEADER = (os.environ.get("INVENTORY_API_AUTH_HEADER") or "Authorization").strip()
INVENTORY_API_AUTH_SCHEME = (os.environ.get("INVENTORY_API_AUTH_SCHEME") or "Bearer").strip()

__all__ = [
    "CONTENT_DB_URL",
    "USER_DB_URL",
    "LOG_LEVEL",
    "CORS_ALLOW_ORIGINS",
    "CORS_ALLOW_CREDENTIALS",
    "MAIL_BATCH_SIZE",
    "MAIL_BATCH_DELAY_MINUTES",
    "MAIL_CLAIM_TTL_MINUTES",
    "MAIL_QUEUE_SCHEDULER_ENABLED",
    "MAIL_QUEUE_POLL_SECONDS",
    "SMTP_CONFIG",
    "MAIL_FROM",
    "ORGANIZATION_NAME",
    "INVENTORY_API_BASE_URL",
    "INVENTORY_API_TOKEN",
    "INVENTORY_API_AUTH_HEADER",
    "INVENTORY_API_AUTH_SCHEME",
]
