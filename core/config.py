import logging
import os
from typing import List

from dotenv import load_dotenv

from loggers.logger_setup import get_logger

load_dotenv()

logger = get_logger("Config")

DEFAULT_TARGET_ROLES = [
    "Super Prover", "Proofer", "PROVED UR LUV", "Prover", "PROOF OF ART",
    "PROOF OF DEV", "PROOF OF MUSIC", "PROOF OF WRITING", "PROOF OF VIDEO", "Proof Verified",
]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Discord
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
TARGET_ROLES = _env_list("TARGET_ROLES", DEFAULT_TARGET_ROLES)

# Storage
DB_PATH = os.getenv("ROLEWATCH_DB_PATH", "data/role_monitoring.db")
BUSY_TIMEOUT_MS = _env_int("ROLEWATCH_BUSY_TIMEOUT_MS", 5000)

# Snapshots
SNAPSHOT_INTERVAL_HOURS = _env_float("SNAPSHOT_INTERVAL_HOURS", 4.0)
SNAPSHOT_SKEW_MARGIN_HOURS = _env_float("SNAPSHOT_SKEW_MARGIN_HOURS", 1.0)
SNAPSHOT_KEEP_COUNT = _env_int("SNAPSHOT_KEEP_COUNT", 100)

# HTTP API
API_KEY = os.getenv("API_KEY", "default-api-key")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _env_int("PORT", 3000)

# Logging
LOG_LEVEL = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO
LOG_DIR = os.getenv("LOG_DIR", "logs")
