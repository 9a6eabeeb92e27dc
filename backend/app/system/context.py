# backend/app/system/context.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.system.config import MetricsConfig
from app.system.metrics.backends import JsonFileBackend, SqliteBackend
from app.system.metrics.push import PushChannel
from app.system.metrics.sampler import MetricSampler
from app.system.metrics.service import AggregationService
from app.system.metrics.store import SnapshotStore
from app.system.traffic import TrafficTracker

log = logging.getLogger("nexa.core")


@dataclass
class MetricsContext:
    """Everything the metrics routes and loops share, built once per process."""

    config: MetricsConfig
    sampler: MetricSampler
    store: SnapshotStore
    service: AggregationService
    tracker: TrafficTracker
    channel: PushChannel

    async def aclose(self) -> None:
        await self.channel.close()
        await self.service.flush()
        await self.sampler.aclose()
        backend = self.store.backend
        if isinstance(backend, SqliteBackend):
            backend.close()


def build_store(cfg: MetricsConfig) -> SnapshotStore:
    if cfg.history_backend == "sqlite":
        backend = SqliteBackend(Path(cfg.history_dir) / "metrics_history.sqlite3")
    else:
        backend = JsonFileBackend(cfg.history_dir)
    return SnapshotStore(backend, retention_limit=cfg.retention_limit)


def build_context(
    cfg: MetricsConfig,
    sampler: Optional[MetricSampler] = None,
    store: Optional[SnapshotStore] = None,
) -> MetricsContext:
    sampler = sampler or MetricSampler(
        cfg.gateway_url,
        timeout_s=cfg.gateway_timeout_s,
        path=cfg.gateway_path,
    )
    store = store or build_store(cfg)
    service = AggregationService(sampler, store)
    log.info(
        "metrics context ready: gateway=%s history=%s(%s) retention=%d",
        cfg.gateway_url,
        cfg.history_backend,
        cfg.history_dir,
        store.retention_limit,
    )
    return MetricsContext(
        config=cfg,
        sampler=sampler,
        store=store,
        service=service,
        tracker=TrafficTracker(response_time_samples=cfg.response_time_samples),
        channel=PushChannel(service),
    )
