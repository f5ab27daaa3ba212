from typing import AsyncIterator, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from client.errors import SignalingUnavailable
from constants import SIGNALING_URL
from logging_config import get_logger
from schemas.messages import (
    ConnectedMessage,
    InvalidMessage,
    ServerMessage,
    WireModel,
    encode,
    parse_server_message,
)

logger = get_logger(__name__)


class SignalingChannel:
    """Websocket connection to the signaling gateway."""

    def __init__(self, url: str = SIGNALING_URL):
        self.url = url
        self.websocket = None
        self.connection_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    async def connect(self) -> str:
        """Open the websocket and wait for the gateway to assign our connection id."""
        await self.close()
        logger.info(f"Connecting to signaling server {self.url}")
        websocket = await websockets.connect(self.url)
        try:
            message = parse_server_message(await websocket.recv())
        except (InvalidMessage, ConnectionClosed) as e:
            await websocket.close()
            raise SignalingUnavailable(f"handshake failed: {e}") from e
        if not isinstance(message, ConnectedMessage):
            await websocket.close()
            raise SignalingUnavailable(f"expected 'connected', got '{message.event}'")

        self.websocket = websocket
        self.connection_id = message.data.connection_id
        logger.info(f"Signaling connected as {self.connection_id}")
        return self.connection_id

    async def send(self, message: WireModel):
        if self.websocket is None:
            raise SignalingUnavailable("signaling channel is not connected")
        try:
            await self.websocket.send(encode(message))
        except ConnectionClosed as e:
            raise SignalingUnavailable(str(e)) from e
        logger.debug(f"Sent {message.event}")

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """Inbound messages until the transport closes, cleanly or not."""
        if self.websocket is None:
            raise SignalingUnavailable("signaling channel is not connected")
        try:
            async for raw in self.websocket:
                try:
                    yield parse_server_message(raw)
                except InvalidMessage as e:
                    logger.warning(f"Ignoring malformed message from server: {e}")
        except ConnectionClosedOK:
            logger.info("Signaling connection closed")
        except ConnectionClosed as e:
            logger.warning(f"Signaling connection lost: {e}")
        finally:
            self.websocket = None

    async def close(self):
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()
