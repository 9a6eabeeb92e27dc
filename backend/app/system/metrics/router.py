# backend/app/system/metrics/router.py
from __future__ import annotations

from typing import Any, List, Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from app.system.context import MetricsContext

from .models import SystemSnapshot, TokenUsageRequest


class SetMetricRequest(BaseModel):
    value: Any


def _dump(snaps: List[SystemSnapshot]) -> List[dict]:
    return [s.to_json() for s in snaps]


def build_metrics_router(ctx: MetricsContext) -> APIRouter:
    router = APIRouter(tags=["metrics"])

    @router.get("/metrics/system")
    async def get_system_metrics():
        snap = await ctx.service.get_current_metrics()
        return snap.to_json()

    @router.get("/metrics")
    async def get_metrics(
        days: Optional[int] = Query(default=None, le=366),
        limit: Optional[int] = Query(default=None, ge=1, le=100_000),
    ):
        if days is None and limit is not None:
            snaps = await ctx.service.get_recent_metrics(limit)
            return {"limit": limit, "count": len(snaps), "metrics": _dump(snaps)}

        days = max(1, days if days is not None else 1)
        snaps = await ctx.service.get_historical_metrics(days)
        if limit is not None:
            snaps = snaps[-limit:]
        return {"days": days, "count": len(snaps), "metrics": _dump(snaps)}

    @router.get("/metrics/history")
    async def get_metrics_history(days: int = Query(default=1, le=366)):
        days = max(1, days)
        snaps = await ctx.service.get_historical_metrics(days)
        return {"days": days, "count": len(snaps), "metrics": _dump(snaps)}

    @router.get("/metrics/traffic")
    async def get_traffic_metrics():
        return ctx.tracker.snapshot().model_dump(mode="json", by_alias=True)

    @router.get("/metrics/tokens")
    async def get_token_metrics():
        return ctx.service.get_token_metrics().model_dump(mode="json", by_alias=True)

    @router.post("/metrics/tokens")
    async def record_token_usage(body: TokenUsageRequest):
        tokens = ctx.service.record_token_usage(body)
        return {"ok": True, "tokens": tokens.model_dump(mode="json", by_alias=True)}

    # Named metrics mutate state and notify observers on the event loop, so
    # these stay async.
    @router.get("/metrics/named")
    async def get_named_metrics():
        return {"ok": True, "metrics": jsonable_encoder(ctx.service.get_all_metrics())}

    @router.get("/metrics/named/{name}")
    async def get_named_metric(name: str):
        if not ctx.service.has_metric(name):
            raise HTTPException(status_code=404, detail="metric_not_found")
        return {"ok": True, "name": name, "value": jsonable_encoder(ctx.service.get_metric(name))}

    @router.put("/metrics/named/{name}")
    async def set_named_metric(name: str, body: SetMetricRequest):
        ctx.service.track_metric(name, body.value)
        return {"ok": True, "name": name, "value": body.value}

    @router.delete("/metrics/named")
    async def clear_named_metrics():
        ctx.service.clear_metrics()
        return {"ok": True}

    @router.get("/health")
    async def get_health():
        return {
            "status": "ok",
            "subscribers": ctx.channel.subscriber_count,
            "gateway_available": ctx.sampler.gateway_available,
        }

    return router
