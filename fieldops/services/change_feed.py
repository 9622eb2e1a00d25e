"""Change feed: publishes entity state changes to WebSocket clients and in-process observers."""

from __future__ import annotations

import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import WebSocket

from fieldops.schemas.events import ChangeEvent

logger = logging.getLogger(__name__)

Observer = Callable[[ChangeEvent], Awaitable[None] | None]

FIREHOSE = "*"


def channel_for(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


class ChangeFeed:
    def __init__(self):
        self._connections: dict[str, list[WebSocket]] = {}
        self._observers: list[Observer] = []

    async def connect(self, channel: str, websocket: WebSocket):
        await websocket.accept()
        self._connections.setdefault(channel, []).append(websocket)

    def disconnect(self, channel: str, websocket: WebSocket):
        conns = self._connections.get(channel, [])
        if websocket in conns:
            conns.remove(websocket)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns the callable that unregisters it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def publish(
        self,
        entity_type: str,
        entity_id: str,
        event_kind: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Fire-and-forget: delivery failures are logged, never raised."""
        event = ChangeEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            event=event_kind,
            data=data or {},
            occurred_at=datetime.now(timezone.utc),
        )
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change feed observer failed for %s/%s %s", entity_type, entity_id, event_kind)

        message = event.model_dump(mode="json")
        for channel in (channel_for(entity_type, entity_id), FIREHOSE):
            await self._broadcast(channel, message)

    async def _broadcast(self, channel: str, message: dict):
        conns = self._connections.get(channel, [])
        dead = []
        for ws in conns:
            try:
                await ws.send_text(json.dumps(message))
            except Exception:
                dead.append(ws)
        for ws in dead:
            conns.remove(ws)
        if dead:
            logger.info("Dropped %d dead websocket(s) on %s", len(dead), channel)


change_feed = ChangeFeed()
