# backend/app/system/metrics/models.py
from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotSource(str, Enum):
    GATEWAY = "gateway"
    LOCAL = "local"
    PLACEHOLDER = "placeholder"


class DiskUsage(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    used_bytes: int = Field(ge=0)
    total_bytes: int = Field(ge=0)

    @model_validator(mode="after")
    def _used_within_total(self) -> "DiskUsage":
        if self.used_bytes > self.total_bytes:
            raise ValueError("usedBytes exceeds totalBytes")
        return self


class SystemSnapshot(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: int = Field(ge=0)  # epoch milliseconds
    cpu_usage_percent: float = Field(ge=0, le=100, allow_inf_nan=False)
    memory_used_bytes: int = Field(ge=0)
    memory_total_bytes: int = Field(ge=0)
    uptime_seconds: float = Field(ge=0, allow_inf_nan=False)
    process_count: Optional[int] = Field(default=None, ge=0)
    disk_usage: Optional[DiskUsage] = None
    cpu_cores: Optional[int] = Field(default=None, ge=0)
    cpu_model: Optional[str] = None
    source: SnapshotSource = SnapshotSource.LOCAL
    degraded: bool = False

    @model_validator(mode="after")
    def _memory_within_total(self) -> "SystemSnapshot":
        if self.memory_used_bytes > self.memory_total_bytes:
            raise ValueError("memoryUsedBytes exceeds memoryTotalBytes")
        return self

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TrafficSnapshot(_CamelModel):
    total_requests: int
    total_bytes_in: int
    total_bytes_out: int
    requests_by_endpoint: Dict[str, int]
    responses_by_status: Dict[int, int]
    requests_by_user_agent: Dict[str, int]
    hourly_requests: List[int] = Field(min_length=24, max_length=24)
    response_time_samples: int
    average_response_time_ms: float
    p95_response_time_ms: float
    average_response_time_by_endpoint: Dict[str, float]
    inflight: int
    since: int  # epoch milliseconds, process start
    last_updated: Optional[int] = None


class TokenMetrics(_CamelModel):
    total_processed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    by_model: Dict[str, int] = Field(default_factory=dict)
    timestamp: int = 0  # epoch milliseconds of the last update


class TokenUsageRequest(_CamelModel):
    model: Optional[str] = None
    total: int = Field(ge=0)
    input: Optional[int] = Field(default=None, ge=0)
    output: Optional[int] = Field(default=None, ge=0)


class MetricEventKind(str, Enum):
    METRIC_UPDATED = "metric_updated"
    METRICS_CLEARED = "metrics_cleared"


class MetricEvent(BaseModel):
    kind: MetricEventKind
    name: Optional[str] = None
    value: Any = None


# ---- gateway payload normalization ----

def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def _num(value: Any) -> Optional[float]:
    """Finite float from a JSON value, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        # OverflowError: JSON integers beyond float range
        return None
    return out if math.isfinite(out) else None


def _first(raw: Dict[str, Any], *paths: str) -> Optional[float]:
    # paths are dotted, e.g. "memory.used"
    for path in paths:
        node: Any = raw
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                node = None
                break
            node = node[part]
        val = _num(node)
        if val is not None:
            return val
    return None


def _first_str(raw: Dict[str, Any], *paths: str) -> Optional[str]:
    for path in paths:
        node: Any = raw
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                node = None
                break
            node = node[part]
        if isinstance(node, str) and node.strip():
            return node.strip()[:256]
    return None


def normalize_snapshot_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerce a gateway payload into valid SystemSnapshot field values.

    Accepts the camelCase snapshot shape, the flat snake_case shape
    (cpu_usage, memory_used, memory_total, uptime, processes) and the nested
    shape (cpu.usage/cores/model, memory.total/used/usage_percent). Out-of-range numbers
    are clamped, missing ones default to zero. Raises ValueError only when
    the payload is not an object or carries no recognizable field at all.
    """
    if not isinstance(raw, dict):
        raise ValueError("gateway payload is not a JSON object")

    cpu = _first(raw, "cpuUsagePercent", "cpu_usage_percent", "cpu_usage", "cpu.usage")
    mem_total = _first(raw, "memoryTotalBytes", "memory_total_bytes", "memory_total", "memory.total")
    mem_used = _first(raw, "memoryUsedBytes", "memory_used_bytes", "memory_used", "memory.used")
    mem_pct = _first(raw, "memory.usage_percent", "memory.usagePercent")
    uptime = _first(raw, "uptimeSeconds", "uptime_seconds", "uptime")
    procs = _first(raw, "processCount", "process_count", "processes")

    if all(v is None for v in (cpu, mem_total, mem_used, mem_pct, uptime, procs)):
        raise ValueError("gateway payload has no snapshot fields")

    total = int(max(0.0, mem_total or 0.0))
    if mem_used is None and mem_pct is not None:
        mem_used = total * _clamp(mem_pct, 0.0, 100.0) / 100.0
    used = int(_clamp(mem_used or 0.0, 0.0, float(total)))

    fields: Dict[str, Any] = {
        "cpu_usage_percent": round(_clamp(cpu or 0.0, 0.0, 100.0), 2),
        "memory_used_bytes": used,
        "memory_total_bytes": total,
        "uptime_seconds": max(0.0, uptime or 0.0),
        "process_count": int(max(0.0, procs)) if procs is not None else None,
    }

    cores = _first(raw, "cpuCores", "cpu_cores", "cores", "cpu.cores")
    if cores is not None:
        fields["cpu_cores"] = int(max(0.0, cores))
    model = _first_str(raw, "cpuModel", "cpu_model", "cpu.model")
    if model is not None:
        fields["cpu_model"] = model

    disk_total = _first(raw, "diskUsage.totalBytes", "disk_usage.total_bytes", "disk.total")
    disk_used = _first(raw, "diskUsage.usedBytes", "disk_usage.used_bytes", "disk.used")
    if disk_total is not None:
        dt = int(max(0.0, disk_total))
        fields["disk_usage"] = DiskUsage(
            used_bytes=int(_clamp(disk_used or 0.0, 0.0, float(dt))),
            total_bytes=dt,
        )

    return fields
