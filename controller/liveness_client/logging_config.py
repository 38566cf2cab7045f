"""Logging bootstrap for the liveness client."""
from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

RUNTIME_LOG = "liveness-client.log"
SESSION_LOG = "sessions.log"

# Loggers whose records also go to the per-session audit file.
SESSION_LOGGERS = (
    "liveness_client.session_manager",
    "liveness_client.retriever",
    "liveness_client.storage",
)

# Third-party loggers that are noisy below these levels.
QUIET_LOGGERS = {
    "websockets": "INFO",
    "httpx": "WARNING",
    "httpcore": "WARNING",
}


def _rotating(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def build_logging_config(level: str, log_dir: Path, retention_days: int = 14) -> Dict[str, Any]:
    level = level.upper()
    loggers: Dict[str, Any] = {name: {"level": lvl} for name, lvl in QUIET_LOGGERS.items()}
    for name in SESSION_LOGGERS:
        loggers[name] = {"handlers": ["session_file"], "propagate": True}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"},
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default", "level": level},
            "runtime_file": _rotating(log_dir / RUNTIME_LOG, level, retention_days),
            "session_file": _rotating(log_dir / SESSION_LOG, "INFO", retention_days),
        },
        "loggers": loggers,
        "root": {"level": level, "handlers": ["console", "runtime_file"]},
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """Console and runtime log for everything, plus a session audit log."""

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    dictConfig(build_logging_config(level, log_dir, retention_days))


__all__ = ["build_logging_config", "configure_logging"]
