from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ===================== CONFIG =====================
BASE_URL = os.environ.get("DESKCAL_BASE_URL", "https://deskcal.supabase.co")
API_KEY = os.environ.get("DESKCAL_API_KEY", "")
IDENTITY = os.environ.get("DESKCAL_IDENTITY", "")
PASSWORD = os.environ.get("DESKCAL_PASSWORD", "")
DATA_DIR = Path(os.environ.get("DESKCAL_DATA_DIR", str(Path.home() / ".deskcal")))
LOG_LEVEL = os.environ.get("DESKCAL_LOG_LEVEL", "INFO")

DEBOUNCE_DELAY_S = _env_float("DESKCAL_DEBOUNCE_S", 3.0)
AUTO_SYNC_INTERVAL_S = _env_float("DESKCAL_AUTO_SYNC_S", 300.0)  # 5 min heartbeat
REQUEST_TIMEOUT_S = _env_float("DESKCAL_TIMEOUT_S", 30.0)
RETRY_ATTEMPTS = int(_env_float("DESKCAL_RETRY_ATTEMPTS", 3))
RETRY_BACKOFF_S = _env_float("DESKCAL_RETRY_BACKOFF_S", 1.0)
BACKUP_KEEP = int(_env_float("DESKCAL_BACKUP_KEEP", 10))
SHUTDOWN_TIMEOUT_S = _env_float("DESKCAL_SHUTDOWN_TIMEOUT_S", 10.0)


@dataclass
class SyncSettings:
    base_url: str = BASE_URL
    api_key: str = API_KEY
    debounce_delay: float = DEBOUNCE_DELAY_S
    auto_sync_interval: float = AUTO_SYNC_INTERVAL_S
    request_timeout: float = REQUEST_TIMEOUT_S
    retry_attempts: int = RETRY_ATTEMPTS
    retry_backoff: float = RETRY_BACKOFF_S
    backup_keep: int = BACKUP_KEEP
    shutdown_timeout: float = SHUTDOWN_TIMEOUT_S
