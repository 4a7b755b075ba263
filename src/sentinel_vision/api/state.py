"""
Websocket connection tracking for live feed subscribers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from fastapi import WebSocket

from .schemas import WsEnvelope

LOGGER = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks the websocket attached to each camera's live feed."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, camera_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.active_connections.setdefault(camera_id, websocket)
        LOGGER.info(
            "Websocket connected for camera '%s' (%d clients)",
            camera_id,
            len(self.active_connections),
        )

    async def disconnect(self, camera_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            if self.active_connections.get(camera_id) is websocket:
                del self.active_connections[camera_id]
        LOGGER.info(
            "Websocket disconnected for camera '%s' (%d clients)",
            camera_id,
            len(self.active_connections),
        )

    async def send(self, websocket: WebSocket, envelope: WsEnvelope) -> None:
        await websocket.send_text(envelope.model_dump_json(by_alias=True))
