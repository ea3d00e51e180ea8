"""
Signaling Module - Relay Messages, Transport and Routing

Everything that travels over the relay: the message schema, the websocket
transport, the per-role message router and the room lookup.
"""

from .messages import (
    ClientMessageType, ServerMessageType, SignalType,
    CreateRoom, JoinRoom, Signal,
    RoomCreated, RoomJoined, PeerJoined, PeerLeft, ServerError, RoomExists,
    parse_server_message, message_kind,
)
from .router import MessageRouter
from .transport import SignalingTransport
from .rooms import RoomStatus, check_room

__all__ = [
    'ClientMessageType',
    'ServerMessageType',
    'SignalType',
    'CreateRoom',
    'JoinRoom',
    'Signal',
    'RoomCreated',
    'RoomJoined',
    'PeerJoined',
    'PeerLeft',
    'ServerError',
    'RoomExists',
    'parse_server_message',
    'message_kind',
    'MessageRouter',
    'SignalingTransport',
    'RoomStatus',
    'check_room',
]
