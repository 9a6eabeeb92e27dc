# /backend/app/main.py
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.logging import setup_logging
from app.system.config import MetricsConfig, load_config
from app.system.context import MetricsContext, build_context
from app.system.loops import history_cleanup_loop, history_writer_loop
from app.system.metrics.push import build_push_router
from app.system.metrics.router import build_metrics_router
from app.system.traffic import TrafficMiddleware

setup_logging()
log = logging.getLogger("nexa.core")


def create_app(
    cfg: Optional[MetricsConfig] = None,
    context: Optional[MetricsContext] = None,
) -> FastAPI:
    cfg = cfg or (context.config if context else load_config())
    ctx = context or build_context(cfg)

    app = FastAPI(title="Nexa Agents Metrics", version="0.1.0")
    log.info("Starting Nexa metrics backend")

    app.state.config = cfg
    app.state.metrics = ctx
    app.state.background_tasks = []

    app.add_middleware(
        TrafficMiddleware,
        tracker=ctx.tracker,
        exclude_prefixes=cfg.traffic_exclude_prefixes,
    )

    @app.on_event("startup")
    async def start_background_tasks():
        ctx.service.bind_loop(asyncio.get_running_loop())
        if not cfg.background_tasks:
            log.info("Background metrics tasks disabled")
            return
        log.info(
            "Starting background tasks: history every %.0fs, broadcast every %.0fs",
            cfg.history_interval_s,
            cfg.broadcast_interval_s,
        )
        tasks: List[asyncio.Task] = [
            asyncio.create_task(history_writer_loop(ctx.service, interval_s=cfg.history_interval_s)),
            asyncio.create_task(ctx.channel.run(interval_s=cfg.broadcast_interval_s)),
        ]
        if cfg.history_retention_days > 0:
            tasks.append(
                asyncio.create_task(history_cleanup_loop(ctx.store, days=cfg.history_retention_days))
            )
        app.state.background_tasks = tasks

    @app.on_event("shutdown")
    async def stop_background_tasks():
        tasks = app.state.background_tasks
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        app.state.background_tasks = []
        await ctx.aclose()
        log.info("Nexa metrics backend stopped")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Metrics REST + push channel
    app.include_router(build_metrics_router(ctx), prefix="/api")
    app.include_router(build_push_router(ctx.channel), prefix="/api")

    return app


app = create_app()
