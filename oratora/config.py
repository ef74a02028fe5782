import json
import logging
import os
from typing import List

# Load environment variables from .env if available, but avoid during pytest to keep tests deterministic
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    try:
        v = os.getenv(name, "1" if default else "0").strip().lower()
        return v in ("1", "true", "yes", "on")
    except Exception:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = _env_str(name)
    if not raw:
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


def get_logger(name: str) -> logging.Logger:
    """Return an application logger that emits under Uvicorn.

    - honor LOG_LEVEL env (default INFO)
    - attach a StreamHandler if none present
    - disable propagate to avoid duplicate logs with Uvicorn root handlers
    """
    logger = logging.getLogger(name)
    try:
        lvl = getattr(logging, _env_str("LOG_LEVEL", "INFO").upper(), logging.INFO)
    except Exception:
        lvl = logging.INFO
    logger.setLevel(lvl)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(h)
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """Emit one JSON log line. Never raises."""
    try:
        logger.log(level, json.dumps({"event": event, **fields}, default=str))
    except Exception:
        pass


# Session lifecycle
SESSION_RETENTION_HOURS = _env_float("SESSION_RETENTION_HOURS", 24.0)
SESSION_SWEEP_INTERVAL_SECONDS = _env_float("SESSION_SWEEP_INTERVAL_SECONDS", 3600.0)
AUDIO_STORAGE_DIR = _env_str("AUDIO_STORAGE_DIR", "audio_storage")

# Admission control (0 = unbounded)
EVAL_QUEUE_MAX_LENGTH = _env_int("EVAL_QUEUE_MAX_LENGTH", 0)
RAPID_FIRE_MAX_PROMPTS = _env_int("RAPID_FIRE_MAX_PROMPTS", 50)

# Network timeouts
AI_HTTP_TIMEOUT_SECONDS = _env_float("AI_HTTP_TIMEOUT_SECONDS", 60.0)

# Optional long-lived session store (HTTP)
SESSION_STORE_URL = _env_str("SESSION_STORE_URL")
SESSION_STORE_SECRET = _env_str("SESSION_STORE_SECRET")
SESSION_STORE_TIMEOUT_SECONDS = _env_float("SESSION_STORE_TIMEOUT_SECONDS", 10.0)

CORS_ALLOW_ORIGINS = _env_list("CORS_ALLOW_ORIGINS", ["http://localhost:3000"])
