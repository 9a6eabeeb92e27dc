# backend/app/system/metrics/push.py
"""
Push channel for live metrics.

Protocol (JSON text frames, envelope {"type", "data", "timestamp"}):
  client -> server: {"type": "get_metrics"} (a bare "get_metrics" string also works)
                    {"type": "ping"}
  server -> client: metrics_update   on connect and on every broadcast tick
                    system_metrics   reply to get_metrics
                    metric_updated / metrics_cleared   named metric changes
                    pong / error
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from .models import MetricEvent
from .service import AggregationService

log = logging.getLogger("nexa.metrics")

METRICS_UPDATE = "metrics_update"
SYSTEM_METRICS = "system_metrics"
GET_METRICS = "get_metrics"


class SubscriberState(str, Enum):
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


def envelope(msg_type: str, data: Any = None) -> Dict[str, Any]:
    return {"type": msg_type, "data": data, "timestamp": int(time.time() * 1000)}


@dataclass(eq=False)
class Subscriber:
    websocket: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SubscriberState = SubscriberState.CONNECTING
    connected_at: float = field(default_factory=time.time)

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)


class PushChannel:
    def __init__(self, service: AggregationService) -> None:
        self.service = service
        self._subscribers: Dict[str, Subscriber] = {}
        self._unsubscribe = service.subscribe(self._on_metric_event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribers(self) -> List[Subscriber]:
        return list(self._subscribers.values())

    async def connect(self, websocket: Any) -> Subscriber:
        # named-metric events raised off the loop are forwarded through it
        self.service.bind_loop(asyncio.get_running_loop())
        sub = Subscriber(websocket=websocket)
        try:
            await websocket.accept()
        except Exception:
            sub.state = SubscriberState.CLOSED
            raise
        sub.state = SubscriberState.OPEN
        self._subscribers[sub.id] = sub
        log.info("metrics subscriber %s connected (%d open)", sub.id, len(self._subscribers))

        snap = await self.service.get_current_metrics()
        await self._send(sub, envelope(METRICS_UPDATE, snap.to_json()))
        return sub

    def disconnect(self, sub: Subscriber) -> None:
        if sub.state is SubscriberState.CLOSED:
            return
        sub.state = SubscriberState.CLOSED
        if self._subscribers.pop(sub.id, None) is not None:
            log.info("metrics subscriber %s disconnected (%d open)", sub.id, len(self._subscribers))

    async def _send(self, sub: Subscriber, message: Dict[str, Any]) -> bool:
        if sub.state is not SubscriberState.OPEN:
            return False
        try:
            await sub.send(message)
            return True
        except Exception as exc:
            log.info("dropping metrics subscriber %s: %s", sub.id, type(exc).__name__)
            self.disconnect(sub)
            return False

    async def handle_message(self, sub: Subscriber, message: Any) -> None:
        msg_type = message.get("type") if isinstance(message, dict) else message
        if msg_type == GET_METRICS:
            snap = await self.service.get_current_metrics()
            await self._send(sub, envelope(SYSTEM_METRICS, snap.to_json()))
        elif msg_type == "ping":
            await self._send(sub, envelope("pong"))
        else:
            await self._send(sub, envelope("error", {"error": f"unknown message type: {msg_type!r}"}))

    async def broadcast(self, message: Dict[str, Any]) -> int:
        targets = [s for s in self._subscribers.values() if s.state is SubscriberState.OPEN]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send(s, message) for s in targets))
        return sum(1 for ok in results if ok)

    async def broadcast_tick(self) -> int:
        """Sample once and send the same snapshot to every open subscriber."""
        if not self._subscribers:
            return 0
        snap = await self.service.get_current_metrics()
        return await self.broadcast(envelope(METRICS_UPDATE, snap.to_json()))

    async def _on_metric_event(self, event: MetricEvent) -> None:
        await self.broadcast(
            envelope(event.kind.value, jsonable_encoder({"name": event.name, "value": event.value}))
        )

    async def serve(self, websocket: Any) -> None:
        """Run one connection from accept to close."""
        try:
            sub = await self.connect(websocket)
        except Exception:
            log.exception("metrics subscriber failed to connect")
            return

        try:
            while sub.state is SubscriberState.OPEN:
                raw = await websocket.receive_text()
                try:
                    message: Any = json.loads(raw)
                except ValueError:
                    message = raw.strip()
                await self.handle_message(sub, message)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            log.info("metrics subscriber %s transport failure: %s", sub.id, type(exc).__name__)
        finally:
            self.disconnect(sub)

    async def run(self, interval_s: float = 30.0) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.broadcast_tick()
            except Exception:
                log.exception("metrics broadcast tick failed; continuing")

    async def close(self) -> None:
        self._unsubscribe()
        for sub in self.subscribers():
            self.disconnect(sub)
            try:
                await sub.websocket.close()
            except Exception:
                log.debug("closing subscriber %s failed", sub.id)


def build_push_router(channel: PushChannel) -> APIRouter:
    router = APIRouter()

    @router.websocket("/metrics/ws")
    async def metrics_ws(websocket: WebSocket):
        await channel.serve(websocket)

    return router
