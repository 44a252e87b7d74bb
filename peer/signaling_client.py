import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

logger = logging.getLogger(__name__)


class SignalingConnectionError(Exception):
    """The signaling server could not be reached or the connection is gone"""


class WebSocketSignalingChannel:
    """JSON envelopes over one websocket to the signaling relay"""

    def __init__(self, websocket):
        self.websocket = websocket

    @classmethod
    async def open(cls, url: str, timeout: float = 10.0) -> "WebSocketSignalingChannel":
        try:
            websocket = await websockets.connect(url, open_timeout=timeout)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as e:
            raise SignalingConnectionError(f"Could not reach signaling server at {url}: {e}") from e
        logger.info(f"Connected to signaling server {url}")
        return cls(websocket)

    async def send(self, message: Dict[str, Any]):
        try:
            await self.websocket.send(json.dumps(message))
        except ConnectionClosed as e:
            raise SignalingConnectionError("Signaling connection is closed") from e

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next envelope, or None once the connection has closed"""
        while True:
            try:
                raw = await self.websocket.recv()
            except ConnectionClosed:
                return None
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed envelope: {raw!r:.80}")

    async def close(self):
        await self.websocket.close()
