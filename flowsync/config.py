from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def parse_int(value: str | None, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def env_int(name: str, default: int, low: int, high: int) -> int:
    value = parse_int(os.environ.get(name, "").strip(), default)
    return max(low, min(value, high))


DATABASE_URL = os.environ.get("DATABASE_URL", "").strip()
DB_PATH = Path(os.environ.get("FLOWSYNC_DB_PATH", "").strip() or BASE_DIR / "flowsync.db")
SECRET_KEY = os.environ.get("APP_SECRET_KEY", "dev-secret-change-me")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

SYNC_BATCH_TIMEOUT_SECONDS = env_int("SYNC_BATCH_TIMEOUT_SECONDS", 30, 1, 600)
SYNC_MAX_BATCH_SIZE = env_int("SYNC_MAX_BATCH_SIZE", 500, 1, 5000)
SYNC_MAX_RETRIES = env_int("SYNC_MAX_RETRIES", 3, 1, 20)
SYNC_QUEUE_BATCH_SIZE = env_int("SYNC_QUEUE_BATCH_SIZE", 50, 1, 1000)
SYNC_RETRY_DELAY_SECONDS = env_int("SYNC_RETRY_DELAY_SECONDS", 1, 0, 3600)
SYNC_MAX_RETRY_DELAY_SECONDS = env_int("SYNC_MAX_RETRY_DELAY_SECONDS", 30, 0, 86400)
SYNC_QUEUE_STALE_SECONDS = env_int("SYNC_QUEUE_STALE_SECONDS", 300, 1, 86400)
