# backend/app/system/metrics/service.py
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .models import MetricEvent, MetricEventKind, SystemSnapshot, TokenMetrics, TokenUsageRequest
from .sampler import MetricSampler
from .store import SnapshotStore

log = logging.getLogger("nexa.metrics")

MetricObserver = Callable[[MetricEvent], Union[None, Awaitable[None]]]


class AggregationService:
    """
    Facade over sampling, history persistence and ad hoc named metrics.

    Named metric changes are pushed to observers registered with subscribe();
    the service knows nothing about who is listening. track_metric() and
    clear_metrics() may be called off the loop (sync routes, worker threads):
    async observers are then handed to the loop given to bind_loop().

    Token usage counters only grow and live for the life of the process.
    """

    def __init__(self, sampler: MetricSampler, store: SnapshotStore) -> None:
        self.sampler = sampler
        self.store = store
        self._named: Dict[str, Any] = {}
        self._observers: List[MetricObserver] = []
        self._pending: Set[asyncio.Task] = set()
        self.latest: Optional[SystemSnapshot] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tokens = TokenMetrics(timestamp=int(time.time() * 1000))
        self._tokens_lock = threading.Lock()

    # ---- snapshots ----

    async def get_current_metrics(self) -> SystemSnapshot:
        snap = await self.sampler.sample()
        self.latest = snap
        # fire-and-forget; the caller never waits on disk
        task = asyncio.create_task(self.store.append(snap))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return snap

    async def get_historical_metrics(self, days: int = 1) -> List[SystemSnapshot]:
        return await self.store.query(days)

    async def get_recent_metrics(self, limit: int) -> List[SystemSnapshot]:
        return await self.store.query_limit(limit)

    async def flush(self) -> None:
        """Wait for in-flight history writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ---- named metrics ----

    def track_metric(self, name: str, value: Any) -> None:
        self._named[name] = value
        log.debug("Tracked metric: %s = %r", name, value)
        self._notify(MetricEvent(kind=MetricEventKind.METRIC_UPDATED, name=name, value=value))

    def get_metric(self, name: str) -> Any:
        return self._named.get(name)

    def has_metric(self, name: str) -> bool:
        return name in self._named

    def get_all_metrics(self) -> Dict[str, Any]:
        return dict(self._named)

    def clear_metrics(self) -> None:
        self._named.clear()
        log.debug("Cleared all metrics")
        self._notify(MetricEvent(kind=MetricEventKind.METRICS_CLEARED))

    # ---- token usage ----

    def record_token_usage(self, usage: TokenUsageRequest) -> TokenMetrics:
        with self._tokens_lock:
            cur = self._tokens
            by_model = dict(cur.by_model)
            if usage.model:
                by_model[usage.model] = by_model.get(usage.model, 0) + usage.total
            self._tokens = TokenMetrics(
                total_processed=cur.total_processed + usage.total,
                input_tokens=cur.input_tokens + (usage.input or 0),
                output_tokens=cur.output_tokens + (usage.output or 0),
                by_model=by_model,
                timestamp=int(time.time() * 1000),
            )
            log.debug("Token usage recorded: total=%d model=%s", usage.total, usage.model)
            return self._tokens

    def get_token_metrics(self) -> TokenMetrics:
        return self._tokens

    # ---- observers ----

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop that async observers run on when events come from other threads."""
        self._loop = loop

    def subscribe(self, observer: MetricObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

        return unsubscribe

    def _notify(self, event: MetricEvent) -> None:
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    self._dispatch(result)
            except Exception:
                log.exception("metric observer %r failed", observer)

    def _dispatch(self, awaitable: Awaitable[None]) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop = self._loop
            if loop is None or loop.is_closed() or not loop.is_running():
                if inspect.iscoroutine(awaitable):
                    awaitable.close()
                log.warning("no event loop for async metric observer; event dropped")
                return
            loop.call_soon_threadsafe(self._schedule, awaitable)
            return
        self._schedule(awaitable)

    def _schedule(self, awaitable: Awaitable[None]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)
        task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("async metric observer failed: %r", task.exception())
