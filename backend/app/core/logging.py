from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path

LOG_FAMILIES = ("core", "api", "metrics", "traffic")


def _repo_root() -> Path:
    # backend/app/core/logging.py -> parents: core(0), app(1), backend(2), repo(3)
    return Path(__file__).resolve().parents[3]


def _level_from_env(name: str, default: str = "INFO") -> str:
    val = os.getenv(name, default).upper().strip()
    return val if val in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else default


def _logs_dir() -> Path:
    raw = os.getenv("NEXA_LOG_DIR")
    if raw:
        return Path(raw)
    return _repo_root() / "logs"


def setup_logging() -> None:
    """
    Configure file loggers:
      logs/core.log
      logs/api.log
      logs/metrics.log
      logs/traffic.log

    Per-file log levels via env:
      NEXA_LOG_CORE_LEVEL
      NEXA_LOG_API_LEVEL
      NEXA_LOG_METRICS_LEVEL
      NEXA_LOG_TRAFFIC_LEVEL

    The directory itself can be moved with NEXA_LOG_DIR.
    """
    logs_dir = _logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)

    handlers = {
        f"{family}_file": {
            "class": "logging.FileHandler",
            "formatter": "standard",
            "filename": str(logs_dir / f"{family}.log"),
            "mode": "a",
        }
        for family in LOG_FAMILIES
    }
    loggers = {
        f"nexa.{family}": {
            "handlers": [f"{family}_file"],
            "level": _level_from_env(f"NEXA_LOG_{family.upper()}_LEVEL", "INFO"),
            "propagate": False,
        }
        for family in LOG_FAMILIES
    }

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
    }

    logging.config.dictConfig(config)
