"""WebSocket endpoints for real-time updates."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws/analyses/{analysis_id}")
async def analysis_progress_socket(websocket: WebSocket, analysis_id: str):
    """Push the same event sequence as the SSE stream as JSON messages.

    Client messages are read and discarded in a side task; its disconnect
    frame stops the polling loop.
    """
    await websocket.accept()
    context = websocket.app.state.context
    logger.info("WebSocket client connected for %s", analysis_id)

    disconnected = asyncio.Event()

    async def watch_peer():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                disconnected.set()
                return

    async def is_disconnected() -> bool:
        return disconnected.is_set()

    watcher = asyncio.create_task(watch_peer())
    try:
        async for event, data in context.progress.stream(analysis_id, is_disconnected):
            await websocket.send_json({"type": event, "payload": data})
    except WebSocketDisconnect:
        logger.info("WebSocket client for %s disconnected", analysis_id)
        return
    finally:
        watcher.cancel()

    if disconnected.is_set():
        logger.info("WebSocket client for %s disconnected", analysis_id)
        return
    await websocket.close()
