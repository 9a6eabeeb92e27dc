# backend/app/system/loops.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta

from app.system.metrics.service import AggregationService
from app.system.metrics.store import SnapshotStore

log = logging.getLogger("nexa.metrics")


def _align_to_next(ts: float, interval_s: float) -> float:
    return (int(ts // interval_s) + 1) * interval_s


async def history_writer_loop(service: AggregationService, interval_s: float = 60.0) -> None:
    """
    Every `interval_s` (on the boundary, so one sample per minute by default),
    take a snapshot. get_current_metrics() hands it to the history store.
    """
    while True:
        now = time.time()
        await asyncio.sleep(max(0.0, _align_to_next(now, interval_s) - now))
        try:
            await service.get_current_metrics()
        except Exception:
            log.exception("history_writer_loop failed; continuing")
            await asyncio.sleep(5)


async def history_cleanup_loop(store: SnapshotStore, days: int) -> None:
    """Once a day, drop history partitions older than `days`."""
    while True:
        try:
            await store.prune_older_than(days)
        except Exception:
            log.exception("history_cleanup_loop failed; continuing")
        await asyncio.sleep(timedelta(days=1).total_seconds())
