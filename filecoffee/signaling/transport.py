"""
Signaling Transport

A persistent websocket to the relay. Sends client messages as JSON text
frames and yields parsed server messages.

Frames that cannot be parsed are logged and skipped; they never end the
read loop. A failed connect or an unexpected close raises TransportError.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from ..errors import ProtocolError, TransportError
from .messages import ClientMessage, ServerMessage, Signal, parse_server_message

logger = logging.getLogger(__name__)


class SignalingTransport:
    """Websocket connection to the signaling relay."""

    def __init__(self, url: str, connect_timeout: float = 10.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self._ws = None
        self._closed = False

        # Statistics
        self.messages_sent = 0
        self.messages_received = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self):
        """Open the websocket."""
        if self.is_connected:
            return

        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, max_size=None),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {self.url}") from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

        self._closed = False
        logger.info(f"Connected to signaling server {self.url}")

    async def send(self, message: ClientMessage):
        """Send a client message."""
        if not self.is_connected:
            raise TransportError("Signaling connection is not open")

        try:
            await self._ws.send(message.to_json())
        except ConnectionClosed as e:
            self._closed = True
            raise TransportError(f"Signaling connection closed: {e}") from e

        self.messages_sent += 1
        logger.debug(f"Sent {message.type}")

    async def send_signal(self, data: dict):
        """Send an opaque negotiation payload to the peer."""
        await self.send(Signal(data=data))

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """
        Yield server messages in delivery order until the socket closes.

        Raises:
            TransportError: if the connection drops unexpectedly
        """
        if not self.is_connected:
            raise TransportError("Signaling connection is not open")

        try:
            async for raw in self._ws:
                self.messages_received += 1
                try:
                    message = parse_server_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Dropping signaling frame: {e}")
                    continue
                yield message
        except ConnectionClosedOK:
            logger.info("Signaling connection closed")
        except ConnectionClosed as e:
            if not self._closed:
                raise TransportError(f"Signaling connection lost: {e}") from e
        finally:
            self._closed = True

    async def close(self):
        """Close the websocket."""
        if self._ws is None:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        await ws.close()
        logger.debug("Signaling transport closed")

    def get_stats(self) -> dict:
        return {
            'url': self.url,
            'connected': self.is_connected,
            'messages_sent': self.messages_sent,
            'messages_received': self.messages_received,
        }
