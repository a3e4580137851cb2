"""
WebSocket push of annotation snapshots. Route: /ws/annotations.

On connect the client receives the latest snapshot for every key; after that,
every published snapshot is broadcast as one JSON message:

    {"type": "annotations", "key": "face", "sequence": 12, "items": [...], ...}
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from stylecam.schemas.annotations import AnnotationSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

_loop: Optional[asyncio.AbstractEventLoop] = None


class ConnectionManager:
    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        logger.info("[WS] Client connected (%d total)", len(self._clients))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
        logger.info("[WS] Client disconnected (%d total)", len(self._clients))

    async def broadcast_json(self, message: Dict[str, Any]) -> None:
        payload = json.dumps(message, separators=(",", ":"))
        async with self._lock:
            if not self._clients:
                return
            clients = list(self._clients)
        results = await asyncio.gather(*(ws.send_text(payload) for ws in clients), return_exceptions=True)
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.debug("[WS] Dropping client after send error: %s", result)
                await self.disconnect(ws)


manager = ConnectionManager()


def snapshot_message(snapshot: AnnotationSnapshot) -> Dict[str, Any]:
    return {"type": "annotations", **snapshot.model_dump(mode="json")}


def set_event_loop(loop: asyncio.AbstractEventLoop) -> None:
    global _loop
    _loop = loop


def broadcast(message: Dict[str, Any]) -> None:
    """Schedule a broadcast on the server loop. Safe to call from any thread."""
    loop = _loop
    if loop is None or loop.is_closed():
        return
    try:
        asyncio.run_coroutine_threadsafe(manager.broadcast_json(message), loop)
    except RuntimeError as e:
        logger.debug("[WS] Broadcast skipped, loop not running: %s", e)


def on_store_update(key: str, snapshot: AnnotationSnapshot) -> None:
    if manager.client_count == 0:
        return
    broadcast(snapshot_message(snapshot))


@router.websocket("/annotations")
async def annotations_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        service = getattr(websocket.app.state, "service", None)
        if service is not None:
            for snapshot in service.store.get_all().values():
                await websocket.send_json(snapshot_message(snapshot))
        while True:
            # Client messages are ignored; receiving keeps the disconnect visible.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("[WS] Error in annotations stream: %s", e)
    finally:
        await manager.disconnect(websocket)
