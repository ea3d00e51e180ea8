"""
Signaling Messages

Design Decision: Message Representation
=======================================

Options Considered:
1. Plain dicts straight from json.loads
   - No validation, every handler re-checks fields
2. Dataclasses with hand-written from_dict()
   - Validation by hand, easy to miss a field
3. Pydantic models with a discriminated union on "type"
   - Validation and parsing in one step
   - Same models serialize outgoing messages

Decision: Pydantic discriminated union
- The relay speaks a closed set of tagged messages
- An unknown or malformed message becomes a single ProtocolError
- The Signal payload stays an opaque dict; only the negotiation code reads it

Wire Format (JSON text frames):
```
Client -> Server: CreateRoom{password?}, JoinRoom{room_id, password?}, Signal{data}
Server -> Client: RoomCreated{room_id}, RoomJoined, PeerJoined, PeerLeft,
                  Signal{data}, Error{message}, RoomExists{exists, has_password}
```
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import ProtocolError


class ClientMessageType(str, Enum):
    """Messages sent from the client to the relay."""
    CREATE_ROOM = "CreateRoom"
    JOIN_ROOM = "JoinRoom"
    SIGNAL = "Signal"


class ServerMessageType(str, Enum):
    """Messages sent from the relay to the client."""
    ROOM_CREATED = "RoomCreated"
    ROOM_JOINED = "RoomJoined"
    PEER_JOINED = "PeerJoined"
    PEER_LEFT = "PeerLeft"
    SIGNAL = "Signal"
    ERROR = "Error"
    ROOM_EXISTS = "RoomExists"


class SignalType(str, Enum):
    """Inner type of a Signal payload (the negotiation sub-protocol)."""
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


class SignalingMessage(BaseModel):
    """Base for all relay messages."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


# === Client -> Server ===

class CreateRoom(SignalingMessage):
    type: Literal["CreateRoom"] = "CreateRoom"
    password: Optional[str] = None


class JoinRoom(SignalingMessage):
    type: Literal["JoinRoom"] = "JoinRoom"
    room_id: str = Field(validation_alias=AliasChoices('room_id', 'roomId'))
    password: Optional[str] = None


class Signal(SignalingMessage):
    """Opaque negotiation payload. Travels in both directions."""
    type: Literal["Signal"] = "Signal"
    data: Any = None

    @property
    def signal_type(self) -> Optional[SignalType]:
        """The inner negotiation type, or None if the payload has none we know."""
        if not isinstance(self.data, dict):
            return None
        try:
            return SignalType(self.data.get('type'))
        except ValueError:
            return None


# === Server -> Client ===

class RoomCreated(SignalingMessage):
    type: Literal["RoomCreated"] = "RoomCreated"
    room_id: str = Field(validation_alias=AliasChoices('room_id', 'roomId'))


class RoomJoined(SignalingMessage):
    type: Literal["RoomJoined"] = "RoomJoined"


class PeerJoined(SignalingMessage):
    type: Literal["PeerJoined"] = "PeerJoined"
    peer_count: Optional[int] = None


class PeerLeft(SignalingMessage):
    type: Literal["PeerLeft"] = "PeerLeft"
    peer_count: Optional[int] = None


class ServerError(SignalingMessage):
    type: Literal["Error"] = "Error"
    message: str
    code: Optional[str] = None


class RoomExists(SignalingMessage):
    type: Literal["RoomExists"] = "RoomExists"
    exists: bool
    has_password: bool = Field(
        default=False,
        validation_alias=AliasChoices('has_password', 'hasPassword'),
    )


ClientMessage = Union[CreateRoom, JoinRoom, Signal]

ServerMessage = Annotated[
    Union[RoomCreated, RoomJoined, PeerJoined, PeerLeft, Signal, ServerError, RoomExists],
    Field(discriminator='type'),
]

_server_message_adapter = TypeAdapter(ServerMessage)


def message_kind(message: SignalingMessage) -> ServerMessageType:
    """Get the routing key of a server message."""
    return ServerMessageType(message.type)


def parse_server_message(raw: Union[str, bytes]) -> ServerMessage:
    """
    Parse one text frame from the relay.

    Raises:
        ProtocolError: if the frame is not JSON or not a known message
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Signaling frame is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Signaling frame is not a JSON object")

    try:
        return _server_message_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Unknown or malformed signaling message {data.get('type')!r}") from e


def signal_payload(description) -> dict:
    """Convert a session description to the Signal payload sent to the peer."""
    return {'type': description.type, 'sdp': description.sdp}
