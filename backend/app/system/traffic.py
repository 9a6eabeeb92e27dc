# backend/app/system/traffic.py
from __future__ import annotations

import logging
import time
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.system.metrics.models import TrafficSnapshot

log = logging.getLogger("nexa.traffic")


def _p95(values: List[float]) -> float:
    if not values:
        return 0.0
    values.sort()
    k = int(round(0.95 * (len(values) - 1)))
    return values[k]


def _parse_length(raw: Optional[str]) -> int:
    if not raw:
        return 0
    try:
        return max(0, int(raw.strip()))
    except ValueError:
        return 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class TrafficTracker:
    """
    Process-local request/response counters. Counters only ever grow.

    Updates are plain in-memory mutations; any failure inside the tracker is
    logged and dropped so the observed request is never affected.
    """

    def __init__(self, response_time_samples: int = 1000, endpoint_samples: int = 100) -> None:
        self.total_requests = 0
        self.total_bytes_in = 0
        self.total_bytes_out = 0
        self.requests_by_endpoint: Dict[str, int] = {}
        self.responses_by_status: Dict[int, int] = {}
        self.requests_by_user_agent: Dict[str, int] = {}
        self.hourly_requests: List[int] = [0] * 24
        self._response_times: Deque[float] = deque(maxlen=max(1, response_time_samples))
        self._endpoint_samples = max(1, endpoint_samples)
        self._endpoint_times: Dict[str, Deque[float]] = {}
        self._inflight = 0
        self.since = _now_ms()
        self.last_updated: Optional[int] = None

    def on_request(
        self,
        path: str,
        content_length: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> float:
        started = time.perf_counter()
        try:
            self.total_requests += 1
            self.requests_by_endpoint[path] = self.requests_by_endpoint.get(path, 0) + 1
            self.hourly_requests[datetime.now().hour % 24] += 1
            self.total_bytes_in += _parse_length(content_length)
            if user_agent:
                self.requests_by_user_agent[user_agent] = self.requests_by_user_agent.get(user_agent, 0) + 1
            self._inflight += 1
            self.last_updated = _now_ms()
        except Exception:
            log.debug("traffic tracker failed on request %s", path, exc_info=True)
        return started

    def on_response(self, path: str, started: float, status: int, bytes_out: int) -> None:
        try:
            elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
            self.total_bytes_out += max(0, int(bytes_out))
            self.responses_by_status[status] = self.responses_by_status.get(status, 0) + 1
            self._response_times.append(elapsed_ms)
            per_path = self._endpoint_times.get(path)
            if per_path is None:
                per_path = deque(maxlen=self._endpoint_samples)
                self._endpoint_times[path] = per_path
            per_path.append(elapsed_ms)
            self._inflight = max(0, self._inflight - 1)
            self.last_updated = _now_ms()
        except Exception:
            log.debug("traffic tracker failed on response %s", path, exc_info=True)

    def snapshot(self) -> TrafficSnapshot:
        times = list(self._response_times)
        avg = (sum(times) / len(times)) if times else 0.0
        by_endpoint = {
            path: round(sum(vals) / len(vals), 2)
            for path, vals in self._endpoint_times.items()
            if vals
        }
        return TrafficSnapshot(
            total_requests=self.total_requests,
            total_bytes_in=self.total_bytes_in,
            total_bytes_out=self.total_bytes_out,
            requests_by_endpoint=dict(self.requests_by_endpoint),
            responses_by_status=dict(self.responses_by_status),
            requests_by_user_agent=dict(self.requests_by_user_agent),
            hourly_requests=list(self.hourly_requests),
            response_time_samples=len(times),
            average_response_time_ms=round(avg, 2),
            p95_response_time_ms=round(_p95(times), 2),
            average_response_time_by_endpoint=by_endpoint,
            inflight=self._inflight,
            since=self.since,
            last_updated=self.last_updated,
        )


class TrafficMiddleware:
    """
    Raw ASGI middleware feeding a TrafficTracker.

    Bytes out are summed over every http.response.body message, so streamed
    and chunked responses are counted as actually written.
    """

    def __init__(
        self,
        app: ASGIApp,
        tracker: TrafficTracker,
        exclude_prefixes: Iterable[str] = ("/docs", "/openapi.json"),
    ) -> None:
        self.app = app
        self.tracker = tracker
        self.exclude_prefixes = tuple(exclude_prefixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path") or "/"
        if self.exclude_prefixes and path.startswith(self.exclude_prefixes):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        started = self.tracker.on_request(
            path,
            content_length=headers.get("content-length"),
            user_agent=headers.get("user-agent"),
        )
        status = 500
        bytes_out = 0

        async def send_counting(message: Message) -> None:
            nonlocal status, bytes_out
            if message["type"] == "http.response.start":
                status = int(message.get("status", 500))
            elif message["type"] == "http.response.body":
                bytes_out += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_counting)
        finally:
            self.tracker.on_response(path, started, status, bytes_out)
