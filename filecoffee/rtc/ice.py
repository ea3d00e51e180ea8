"""
ICE Server Lookup

The relay hands out the STUN/TURN servers to use (TURN entries carry
short-lived credentials). Negotiation must never fail because this lookup
failed, so every error falls back to a single public STUN server.

The lookup is started as soon as a session begins and awaited only when
the peer connection is built, so it overlaps with the room handshake.
"""

import asyncio
import logging
from typing import List, Optional, Union

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import DEFAULT_STUN_URL

logger = logging.getLogger(__name__)


class IceServer(BaseModel):
    """One entry of the relay's ICE server list."""
    model_config = ConfigDict(extra='ignore')

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class IceConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    ice_servers: List[IceServer] = Field(default_factory=list, alias='iceServers')


def fallback_ice_servers(stun_url: str = DEFAULT_STUN_URL) -> List[IceServer]:
    return [IceServer(urls=stun_url)]


async def fetch_ice_servers(api_base_url: str, timeout: float = 5.0,
                            fallback_url: str = DEFAULT_STUN_URL) -> List[IceServer]:
    """
    Fetch the ICE server list from the relay.

    Returns:
        The relay's list, or the public STUN fallback on any failure
    """
    url = f"{api_base_url.rstrip('/')}/api/ice-servers"
    client_timeout = aiohttp.ClientTimeout(total=timeout)

    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                payload = await response.json(content_type=None)
        servers = IceConfig.model_validate(payload).ice_servers
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ValidationError) as e:
        logger.warning(f"ICE server lookup failed ({e}), using {fallback_url}")
        return fallback_ice_servers(fallback_url)

    if not servers:
        logger.warning(f"Relay returned no ICE servers, using {fallback_url}")
        return fallback_ice_servers(fallback_url)

    logger.debug(f"Using {len(servers)} ICE servers from relay")
    return servers


def to_rtc_configuration(servers: List[IceServer]) -> RTCConfiguration:
    """Build the aiortc configuration for a list of ICE servers."""
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
        for s in servers
    ])


class IceServerProvider:
    """
    Starts the lookup early and hands the same result to every caller.

    Usage:
        provider = IceServerProvider(config.api_base_url)
        provider.prefetch()          # at session start
        ...
        servers = await provider()   # when building the peer connection
    """

    def __init__(self, api_base_url: str, timeout: float = 5.0,
                 fallback_url: str = DEFAULT_STUN_URL):
        self.api_base_url = api_base_url
        self.timeout = timeout
        self.fallback_url = fallback_url
        self._task: Optional[asyncio.Task] = None

    def prefetch(self):
        """Start the lookup in the background if it is not running yet."""
        if self._task is None:
            self._task = asyncio.ensure_future(
                fetch_ice_servers(self.api_base_url, self.timeout, self.fallback_url)
            )

    async def __call__(self) -> List[IceServer]:
        self.prefetch()
        # shield so a cancelled negotiation does not cancel the shared lookup
        return await asyncio.shield(self._task)

    def reset(self):
        """Forget the cached list so the next session fetches fresh credentials."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
