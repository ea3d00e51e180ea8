"""
Room Lookup

Asks the relay whether a room id is valid before opening a websocket,
so a link to an expired room fails fast instead of hanging in "connecting".
"""

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from ..errors import ProtocolError, RoomNotFoundError, TransportError
from .messages import RoomExists

logger = logging.getLogger(__name__)


@dataclass
class RoomStatus:
    """Result of a room lookup."""
    room_id: str
    exists: bool
    has_password: bool


async def check_room(api_base_url: str, room_id: str,
                     timeout: float = 5.0) -> RoomStatus:
    """
    Look up a room on the relay.

    Returns:
        RoomStatus for an existing room

    Raises:
        RoomNotFoundError: the relay answered 404 or reported exists=false
        TransportError: the relay could not be reached
    """
    room_id = room_id.strip()
    if not room_id:
        raise RoomNotFoundError(room_id)

    url = f"{api_base_url.rstrip('/')}/api/rooms/{room_id}"
    client_timeout = aiohttp.ClientTimeout(total=timeout)

    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if response.status == 404:
                    raise RoomNotFoundError(room_id)
                response.raise_for_status()
                payload = await response.json(content_type=None)
    except aiohttp.ClientResponseError as e:
        raise TransportError(f"Room lookup failed: HTTP {e.status}") from e
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportError(f"Unable to connect to the server: {e}") from e
    except ValueError as e:
        raise ProtocolError(f"Room lookup response is not JSON: {e}") from e

    try:
        answer = RoomExists.model_validate(payload)
    except ValueError as e:
        raise ProtocolError(f"Malformed room lookup response: {payload!r}") from e

    if not answer.exists:
        raise RoomNotFoundError(room_id)

    logger.info(f"Room {room_id} exists (password: {'yes' if answer.has_password else 'no'})")
    return RoomStatus(room_id=room_id, exists=True, has_password=answer.has_password)
