"""
Message Router

Dispatches server messages to the handler registered for their kind.

The sharing side and the receiving side care about different kinds
(the sharer reacts to PeerJoined, the receiver to RoomJoined), so each
role builds its own router and registers only the handlers it needs.
"""

import logging
from typing import Awaitable, Callable, Dict

from .messages import ServerMessage, ServerMessageType, message_kind

logger = logging.getLogger(__name__)

# Type for message handlers
MessageHandler = Callable[[ServerMessage, "SessionContext"], Awaitable[None]]


class MessageRouter:
    """Kind -> handler map over the closed set of server message types."""

    def __init__(self, name: str = "router"):
        self.name = name
        self._handlers: Dict[ServerMessageType, MessageHandler] = {}

        # Statistics
        self.routed = 0
        self.dropped = 0
        self.failed = 0

    def set_handler(self, kind: ServerMessageType, handler: MessageHandler):
        """Set a handler, replacing any previous one for the kind."""
        self._handlers[kind] = handler

    async def route(self, message: ServerMessage, context) -> bool:
        """
        Invoke the handler for the message's kind.

        Returns:
            True if a handler ran, False if the message was dropped
        """
        kind = message_kind(message)
        handler = self._handlers.get(kind)
        if handler is None:
            logger.info(f"[{self.name}] No handler for {kind.value}, dropping")
            self.dropped += 1
            return False

        self.routed += 1
        try:
            await handler(message, context)
        except Exception as e:
            self.failed += 1
            logger.error(f"[{self.name}] Handler for {kind.value} failed: {e}", exc_info=True)
        return True

    def get_stats(self) -> dict:
        return {
            'name': self.name,
            'handles': sorted(kind.value for kind in self._handlers),
            'routed': self.routed,
            'dropped': self.dropped,
            'failed': self.failed,
        }
