# backend/app/system/metrics/store.py
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List

from pydantic import ValidationError

from .backends import PERSISTENCE_ERRORS, PartitionBackend
from .models import SystemSnapshot

log = logging.getLogger("nexa.metrics")

RETENTION_LIMIT = 1440  # one sample per minute for 24h


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def partition_day(timestamp_ms: int) -> date:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc).date()


class SnapshotStore:
    """
    Bounded, day-partitioned snapshot history.

    Appends to the same partition are serialized with a per-day asyncio.Lock;
    backend I/O runs in a worker thread. Persistence is best-effort: failures
    are logged and never raised to the caller.
    """

    def __init__(
        self,
        backend: PartitionBackend,
        retention_limit: int = RETENTION_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.backend = backend
        self.retention_limit = max(1, int(retention_limit))
        self._clock = clock
        self._locks: Dict[date, asyncio.Lock] = {}

    def _lock_for(self, day: date) -> asyncio.Lock:
        lock = self._locks.get(day)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[day] = lock
        return lock

    def today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    async def append(self, snapshot: SystemSnapshot) -> None:
        day = partition_day(snapshot.timestamp)
        try:
            async with self._lock_for(day):
                await asyncio.to_thread(
                    self.backend.append, day, snapshot.to_json(), self.retention_limit
                )
        except PERSISTENCE_ERRORS:
            log.exception("failed to persist metrics snapshot for %s", day.isoformat())

    async def _load(self, day: date) -> List[SystemSnapshot]:
        try:
            async with self._lock_for(day):
                entries = await asyncio.to_thread(self.backend.load, day)
        except PERSISTENCE_ERRORS:
            log.exception("failed to read metrics partition %s", day.isoformat())
            return []

        out: List[SystemSnapshot] = []
        for entry in entries:
            try:
                out.append(SystemSnapshot.model_validate(entry))
            except ValidationError:
                log.debug("skipping invalid history entry in %s", day.isoformat())
        return out

    async def query(self, days: int) -> List[SystemSnapshot]:
        """Snapshots of the last `days` UTC days including today, oldest first."""
        days = max(1, int(days))
        today = self.today()
        out: List[SystemSnapshot] = []
        for offset in range(days - 1, -1, -1):
            out.extend(await self._load(today - timedelta(days=offset)))
        return out

    async def query_limit(self, limit: int) -> List[SystemSnapshot]:
        """The most recent `limit` snapshots across partitions, oldest first."""
        limit = max(1, int(limit))
        collected: List[SystemSnapshot] = []
        for day in reversed(await self.partitions()):
            collected = (await self._load(day)) + collected
            if len(collected) >= limit:
                break
        return collected[-limit:]

    async def partitions(self) -> List[date]:
        try:
            return await asyncio.to_thread(self.backend.days)
        except PERSISTENCE_ERRORS:
            log.exception("failed to list metrics partitions")
            return []

    async def prune_older_than(self, days: int) -> int:
        """Delete partitions outside the last `days` days. days <= 0 keeps everything."""
        if days <= 0:
            return 0
        cutoff = self.today() - timedelta(days=days - 1)
        removed = 0
        for day in await self.partitions():
            if day >= cutoff:
                continue
            try:
                async with self._lock_for(day):
                    if await asyncio.to_thread(self.backend.delete, day):
                        removed += 1
            except PERSISTENCE_ERRORS:
                log.exception("failed to delete metrics partition %s", day.isoformat())
                continue
            self._locks.pop(day, None)
        if removed:
            log.info("pruned %d metrics partition(s) older than %s", removed, cutoff.isoformat())
        return removed
