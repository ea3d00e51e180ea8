"""
Error Types

Every failure in the system belongs to one of these categories. Each is
caught at the boundary where it is detected and turned into visible session
state, so none of them is expected to escape a handler.
"""


class FileCoffeeError(Exception):
    """Base class for all filecoffee errors."""


class TransportError(FileCoffeeError):
    """The signaling socket (or the relay's HTTP API) failed or closed."""


class NegotiationError(FileCoffeeError):
    """Creating or applying an offer, answer or description failed."""


class ProtocolError(FileCoffeeError):
    """A signaling or data-channel message could not be interpreted."""


class TransferError(FileCoffeeError):
    """The file transfer cannot continue (unreadable file, bad metadata)."""


class RoomNotFoundError(FileCoffeeError):
    """The relay does not know the requested room."""

    def __init__(self, room_id: str):
        super().__init__(f"Room not found or has expired: {room_id}")
        self.room_id = room_id
