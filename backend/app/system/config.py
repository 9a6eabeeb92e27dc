# backend/app/system/config.py
from __future__ import annotations

import os
from typing import List

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]
DEFAULT_TRAFFIC_EXCLUDE = ["/docs", "/openapi.json"]


class MetricsConfig(BaseModel):
    # Remote gateway
    gateway_url: str = "http://localhost:3005"
    gateway_path: str = "/api/metrics/system"
    gateway_timeout_s: float = Field(default=4.0, ge=0.1, le=30.0)

    # Cadence
    broadcast_interval_s: float = Field(default=30.0, ge=0.5)
    history_interval_s: float = Field(default=60.0, ge=1.0)

    # Retention
    retention_limit: int = Field(default=1440, ge=1)
    history_retention_days: int = Field(default=30, ge=0)  # 0 = keep forever
    history_dir: str = "data/metrics"
    history_backend: str = Field(default="json", pattern="^(json|sqlite)$")

    # Traffic
    response_time_samples: int = Field(default=1000, ge=1)
    traffic_exclude_prefixes: List[str] = Field(default_factory=lambda: list(DEFAULT_TRAFFIC_EXCLUDE))

    # App
    background_tasks: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))


def load_config() -> MetricsConfig:
    return MetricsConfig(
        gateway_url=_env_str("METRICS_GATEWAY_URL", "http://localhost:3005"),
        gateway_path=_env_str("METRICS_GATEWAY_PATH", "/api/metrics/system"),
        gateway_timeout_s=_env_float("METRICS_GATEWAY_TIMEOUT_S", 4.0),
        broadcast_interval_s=_env_float("METRICS_BROADCAST_INTERVAL_S", 30.0),
        history_interval_s=_env_float("METRICS_HISTORY_INTERVAL_S", 60.0),
        retention_limit=_env_int("METRICS_RETENTION_LIMIT", 1440),
        history_retention_days=_env_int("METRICS_HISTORY_RETENTION_DAYS", 30),
        history_dir=_env_str("METRICS_HISTORY_DIR", "data/metrics"),
        history_backend=_env_str("METRICS_HISTORY_BACKEND", "json").lower(),
        response_time_samples=_env_int("TRAFFIC_RESPONSE_TIME_SAMPLES", 1000),
        traffic_exclude_prefixes=_env_list("TRAFFIC_EXCLUDE_PREFIXES", DEFAULT_TRAFFIC_EXCLUDE),
        background_tasks=_env_bool("METRICS_BACKGROUND_TASKS", True),
        cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
    )
