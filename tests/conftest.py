from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

# Keep log files and background loops out of the way before app modules load.
os.environ.setdefault("NEXA_LOG_DIR", os.path.join(tempfile.gettempdir(), "nexa-test-logs"))
os.environ.setdefault("METRICS_BACKGROUND_TASKS", "false")

import httpx
import pytest

import app.system.metrics.sampler as sampler_module
from app.system.metrics.backends import JsonFileBackend, SqliteBackend
from app.system.metrics.models import SnapshotSource, SystemSnapshot
from app.system.metrics.sampler import MetricSampler
from app.system.metrics.service import AggregationService
from app.system.metrics.store import SnapshotStore

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

LOCAL_FIELDS: Dict[str, Any] = {
    "cpu_usage_percent": 12.5,
    "memory_used_bytes": 4_000,
    "memory_total_bytes": 16_000,
    "uptime_seconds": 3600.0,
    "process_count": 321,
    "disk_usage": None,
}


def ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def make_snapshot(ts: int, **overrides: Any) -> SystemSnapshot:
    fields: Dict[str, Any] = {
        "timestamp": ts,
        "cpu_usage_percent": 10.0,
        "memory_used_bytes": 1_000,
        "memory_total_bytes": 8_000,
        "uptime_seconds": 60.0,
        "process_count": 1,
    }
    fields.update(overrides)
    return SystemSnapshot(**fields)


def gateway_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class StubSampler:
    """Counts sample() calls and returns a fresh snapshot each time."""

    def __init__(self) -> None:
        self.calls = 0
        self._ts = ms(FIXED_NOW)
        self.gateway_available = None

    async def sample(self) -> SystemSnapshot:
        self.calls += 1
        self._ts += 1000
        return make_snapshot(self._ts, process_count=self.calls, source=SnapshotSource.GATEWAY)

    async def aclose(self) -> None:
        return None


@pytest.fixture
def local_fields(monkeypatch) -> Dict[str, Any]:
    monkeypatch.setattr(sampler_module, "collect_local_fields", lambda: dict(LOCAL_FIELDS))
    return LOCAL_FIELDS


@pytest.fixture
def offline_sampler(local_fields) -> MetricSampler:
    client = gateway_client(lambda request: httpx.Response(503))
    return MetricSampler("http://gateway.test", timeout_s=1.0, client=client)


@pytest.fixture(params=["json", "sqlite"])
def backend(request, tmp_path: Path):
    if request.param == "json":
        yield JsonFileBackend(tmp_path / "metrics")
    else:
        b = SqliteBackend(tmp_path / "metrics" / "history.sqlite3")
        yield b
        b.close()


@pytest.fixture
def fixed_store(backend) -> SnapshotStore:
    return SnapshotStore(backend, clock=lambda: FIXED_NOW)


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(JsonFileBackend(tmp_path / "metrics"))


@pytest.fixture
def service(offline_sampler, store) -> AggregationService:
    return AggregationService(offline_sampler, store)


@pytest.fixture
def stub_service(store) -> AggregationService:
    return AggregationService(StubSampler(), store)


def timestamps(snaps: List[SystemSnapshot]) -> List[int]:
    return [s.timestamp for s in snaps]
