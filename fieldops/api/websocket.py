from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fieldops.services.change_feed import FIREHOSE, change_feed, channel_for

router = APIRouter(tags=["websocket"])


async def _listen(channel: str, websocket: WebSocket):
    await change_feed.connect(channel, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        change_feed.disconnect(channel, websocket)


@router.websocket("/api/ws")
async def firehose_endpoint(websocket: WebSocket):
    await _listen(FIREHOSE, websocket)


@router.websocket("/api/ws/{entity_type}/{entity_id}")
async def entity_endpoint(websocket: WebSocket, entity_type: str, entity_id: str):
    await _listen(channel_for(entity_type, entity_id), websocket)
