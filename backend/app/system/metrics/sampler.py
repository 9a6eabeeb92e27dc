# backend/app/system/metrics/sampler.py
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, Optional

import httpx
import psutil

from .models import DiskUsage, SnapshotSource, SystemSnapshot, normalize_snapshot_fields

log = logging.getLogger("nexa.metrics")


def _get_uptime_s() -> float:
    # psutil boot_time is reliable on Linux
    return max(0.0, time.time() - psutil.boot_time())


# already counted inside user/nice on Linux
_GUEST_FIELDS = ("guest", "guest_nice")


def _cpu_usage_percent() -> float:
    # 100 * (1 - idle/total) per logical core, averaged
    usages = []
    for times in psutil.cpu_times(percpu=True):
        total = float(sum(v for k, v in times._asdict().items() if k not in _GUEST_FIELDS))
        if total <= 0:
            continue
        usages.append(100.0 * (1.0 - float(times.idle) / total))
    if not usages:
        return 0.0
    return round(max(0.0, min(100.0, sum(usages) / len(usages))), 2)


def _process_count() -> int:
    try:
        return len(psutil.pids())
    except (psutil.Error, OSError):
        # no process table access; the pid is the best placeholder we have
        return os.getpid()


def _root_disk_usage() -> Optional[DiskUsage]:
    try:
        du = psutil.disk_usage(os.path.abspath(os.sep))
    except (psutil.Error, OSError):
        return None
    total = int(du.total)
    return DiskUsage(used_bytes=min(int(du.used), total), total_bytes=total)


def collect_local_fields() -> Dict[str, Any]:
    vm = psutil.virtual_memory()
    total = int(vm.total)
    used = max(0, min(int(vm.used), total))
    return {
        "cpu_usage_percent": _cpu_usage_percent(),
        "memory_used_bytes": used,
        "memory_total_bytes": total,
        "uptime_seconds": round(_get_uptime_s(), 3),
        "process_count": _process_count(),
        "disk_usage": _root_disk_usage(),
        "cpu_cores": psutil.cpu_count(logical=True),
    }


class MetricSampler:
    """
    Produces one SystemSnapshot per call.

    Tries the remote metrics gateway first, then local psutil introspection,
    then a zeroed placeholder. sample() never raises.
    """

    def __init__(
        self,
        gateway_url: str,
        timeout_s: float = 4.0,
        path: str = "/api/metrics/system",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.gateway_url = gateway_url.rstrip("/")
        self.path = path if path.startswith("/") else "/" + path
        self.timeout_s = float(timeout_s)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
        self._last_ts = 0
        self._gateway_ok: Optional[bool] = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def gateway_available(self) -> Optional[bool]:
        return self._gateway_ok

    def _next_timestamp(self) -> int:
        ts = max(int(time.time() * 1000), self._last_ts + 1)
        self._last_ts = ts
        return ts

    async def _fetch_gateway(self) -> Dict[str, Any]:
        r = await self._client.get(self.gateway_url + self.path)
        if r.status_code != 200:
            raise httpx.HTTPStatusError(
                f"gateway returned {r.status_code}",
                request=r.request,
                response=r,
            )
        return normalize_snapshot_fields(r.json())

    def _mark_gateway(self, ok: bool, exc: Optional[BaseException] = None) -> None:
        if ok:
            if self._gateway_ok is False:
                log.info("metrics gateway %s is reachable again", self.gateway_url)
        elif self._gateway_ok is not False:
            log.warning(
                "metrics gateway %s unavailable (%s); falling back to local introspection",
                self.gateway_url,
                type(exc).__name__ if exc else "unknown",
            )
        else:
            log.debug("metrics gateway still unavailable: %r", exc)
        self._gateway_ok = ok

    async def sample(self) -> SystemSnapshot:
        try:
            # hard cap on top of the client timeout
            fields = await asyncio.wait_for(self._fetch_gateway(), timeout=self.timeout_s)
            snap = SystemSnapshot(
                timestamp=self._next_timestamp(),
                source=SnapshotSource.GATEWAY,
                **fields,
            )
            self._mark_gateway(True)
            return snap
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError, ValueError) as exc:
            self._mark_gateway(False, exc)
        except Exception as exc:
            log.exception("unexpected error reading metrics gateway %s", self.gateway_url)
            self._mark_gateway(False, exc)

        try:
            fields = await asyncio.to_thread(collect_local_fields)
            return SystemSnapshot(
                timestamp=self._next_timestamp(),
                source=SnapshotSource.LOCAL,
                **fields,
            )
        except Exception:
            log.exception("local metrics introspection failed; returning placeholder snapshot")

        return self.placeholder()

    def placeholder(self) -> SystemSnapshot:
        return SystemSnapshot(
            timestamp=self._next_timestamp(),
            cpu_usage_percent=0.0,
            memory_used_bytes=0,
            memory_total_bytes=0,
            uptime_seconds=0.0,
            source=SnapshotSource.PLACEHOLDER,
            degraded=True,
        )
