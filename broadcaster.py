import asyncio
import logging
from typing import Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

import schemas

logger = logging.getLogger(__name__)


class Broadcaster:
    """
    Fans events out to every connected websocket.

    No history is kept: a client only sees events published while it is
    connected. A failed send drops that connection and nothing else.
    """

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info("Client connected (%d live)", len(self.connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.connections:
            self.connections.discard(websocket)
            logger.info("Client disconnected (%d live)", len(self.connections))

    async def _send(self, websocket: WebSocket, message: str):
        if websocket.client_state != WebSocketState.CONNECTED:
            self.disconnect(websocket)
            return
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.debug("Dropping websocket after failed send: %s", e)
            self.disconnect(websocket)

    async def publish(self, event: schemas.Event):
        if not self.connections:
            return

        message = event.to_json()
        # snapshot: connect/disconnect may run while we await the sends
        await asyncio.gather(*[self._send(websocket, message) for websocket in list(self.connections)])
