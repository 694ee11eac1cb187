import json
from typing import Any, Optional

import websockets

from chat_client.constants import RELAY_URL
from logging_config import get_logger

logger = get_logger(__name__)


class RelayConnection:
    """One WebSocket to the relay. A connection serves exactly one room."""

    def __init__(self, url: str = RELAY_URL):
        self.url = url
        self.websocket = None

    async def __aenter__(self):
        self.websocket = await websockets.connect(self.url)
        logger.info(f"Connected to relay at {self.url}")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.websocket is not None:
            await self.websocket.close()
            logger.info("Relay connection closed")
            self.websocket = None

    async def send(self, event: str, data: Any = None):
        await self.websocket.send(json.dumps({"type": event, "data": data}, ensure_ascii=False))

    async def listen(self, session):
        """Feed server frames to `session.handle` one at a time until the socket closes."""
        try:
            async for raw in self.websocket:
                frame = self._decode(raw)
                if frame is None:
                    continue
                await session.handle(frame["type"], frame.get("data"))
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Relay closed the connection: {e}")

    @staticmethod
    def _decode(raw) -> Optional[dict]:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Dropping non-JSON frame from relay")
            return None
        if not isinstance(frame, dict) or "type" not in frame:
            logger.warning("Dropping frame without a type")
            return None
        return frame
