"""
Session Controller - Main Entry Point

Orchestrates one room session at a time:
- ICE server lookup (started as soon as the session starts)
- Signaling transport and its read loop
- Role router (sharing or receiving)
- Peer connection manager and the transfer it carries

Design Decision: One task per signaling message
===============================================

Options Considered:
1. Await each handler inside the read loop
   - Simple, strictly sequential
   - A handler suspended in negotiation (fetching ICE servers, setting a
     description) blocks every later message, including its own candidates
2. One task per message, started in delivery order
   - Handlers start in order and interleave at their awaits
   - Early candidates must be queued (the Candidate Queue does this)

Decision: Option 2
- Matches how the relay delivers messages to a browser client
- The negotiation code re-checks its attempt after every await
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from ..config import Config
from ..errors import ProtocolError, RoomNotFoundError, TransferError, TransportError
from ..rtc.ice import IceServerProvider
from ..rtc.peer import PeerConnectionManager, default_peer_connection_factory
from ..signaling.messages import ClientMessage, CreateRoom, JoinRoom
from ..signaling.rooms import RoomStatus, check_room
from ..signaling.router import MessageRouter
from ..signaling.transport import SignalingTransport
from .context import FINISHED_STATUSES, SessionContext, SessionRole, SessionStatus
from .handlers import attach_peer, build_receiver_router, build_sender_router

logger = logging.getLogger(__name__)


class SessionController:
    """
    Single owner of the session context.

    Usage:
        controller = SessionController(config)
        context = await controller.share(Path("report.pdf"))
        print(context.share_url)
        await context.wait_finished()
        await controller.close()
    """

    def __init__(self, config: Config = None,
                 transport_factory: Callable = SignalingTransport,
                 peer_connection_factory: Callable = default_peer_connection_factory,
                 ice_provider: Optional[IceServerProvider] = None):
        """
        Args:
            config: Client configuration (uses defaults if not provided)
            transport_factory: Builds the signaling transport from (url, connect_timeout)
            peer_connection_factory: Builds an RTCPeerConnection from an RTCConfiguration
            ice_provider: Source of ICE servers (fetches from the relay if not provided)
        """
        self.config = config or Config()
        self.transport_factory = transport_factory
        self.peer_connection_factory = peer_connection_factory
        self.ice_provider = ice_provider or IceServerProvider(
            self.config.api_base_url,
            timeout=self.config.ice_fetch_timeout,
            fallback_url=self.config.fallback_stun_url,
        )

        self.context: Optional[SessionContext] = None
        self._reader: Optional[asyncio.Task] = None
        self._router: Optional[MessageRouter] = None

        # Statistics
        self.sessions_started = 0

    @property
    def is_active(self) -> bool:
        return self.context is not None and not self.context.is_finished

    # === Session start ===

    async def share(self, file_path: Path, password: Optional[str] = None) -> SessionContext:
        """
        Create a room and send file_path to whoever joins it.

        Raises:
            TransferError: if file_path is not a readable file
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise TransferError(f"Not a file: {file_path}")

        context = await self._new_session(SessionRole.OFFERER, build_sender_router())
        context.file_path = file_path
        context.file_name = file_path.name
        context.file_size = file_path.stat().st_size
        context.password = password or None

        await self._open(context, CreateRoom(password=context.password))
        return context

    async def receive(self, room_id: str, password: Optional[str] = None,
                      download_dir: Optional[Path] = None,
                      check: bool = True) -> SessionContext:
        """
        Join room_id and receive the file its owner sends.

        With check=True the room is looked up over HTTP first, so a missing
        room fails without opening the websocket.
        """
        context = await self._new_session(SessionRole.ANSWERER, build_receiver_router())
        context.room_id = room_id
        context.password = password or None
        context.download_dir = Path(download_dir) if download_dir else None

        if check:
            try:
                status = await self.check_room(room_id)
            except (RoomNotFoundError, TransportError, ProtocolError) as e:
                context.fail(str(e))
                return context
            context.room_has_password = status.has_password

        await self._open(context, JoinRoom(room_id=room_id, password=context.password))
        return context

    async def check_room(self, room_id: str) -> RoomStatus:
        """
        Raises:
            RoomNotFoundError: room does not exist
            TransportError: relay unreachable
            ProtocolError: relay answered with something unparseable
        """
        return await check_room(self.config.api_base_url, room_id, timeout=self.config.connect_timeout)

    async def _new_session(self, role: SessionRole, router: MessageRouter) -> SessionContext:
        await self.close()

        self.ice_provider.prefetch()
        transport = self.transport_factory(self.config.signaling_url, self.config.connect_timeout)
        peer = PeerConnectionManager(
            send_signal=transport.send_signal,
            ice_servers=self.ice_provider,
            peer_connection_factory=self.peer_connection_factory,
        )
        context = SessionContext(role=role, config=self.config, transport=transport, peer=peer)
        attach_peer(context)

        self.context = context
        self._router = router
        self.sessions_started += 1
        return context

    async def _open(self, context: SessionContext, first_message: ClientMessage):
        """Connect, send the room request and start reading."""
        context.set_status(SessionStatus.CONNECTING)
        transport = context.transport

        try:
            await transport.connect()
            await transport.send(first_message)
        except TransportError as e:
            context.fail(f"Unable to connect to the server: {e}")
            await transport.close()
            return

        self._reader = asyncio.ensure_future(self._read_loop(context, self._router))

    async def _read_loop(self, context: SessionContext, router: MessageRouter):
        try:
            async for message in context.transport.messages():
                context.spawn(router.route(message, context))
        except TransportError as e:
            await self._signaling_lost(context, str(e))
            return

        await self._signaling_lost(context, "Signaling connection closed")

    async def _signaling_lost(self, context: SessionContext, error: str):
        """
        The relay went away. An open data channel does not need it any more,
        so a running transfer carries on; anything short of that is over.
        """
        if context.is_finished:
            return
        if context.peer.is_connected:
            logger.warning(f"{error}; data channel stays open")
            context.error = error
            context.notify()
            return

        context.cancel_transfer()
        await context.peer.close()
        context.fail(error)

    # === Teardown ===

    async def close(self):
        """Tear down the current session: tasks, peer connection, transport."""
        context, self.context = self.context, None
        reader, self._reader = self._reader, None

        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        if context is None:
            return

        await context.cancel_tasks()
        await context.peer.close()
        await context.transport.close()

        # fresh TURN credentials for the next session
        self.ice_provider.reset()
        context.closed = True
        if context.status not in FINISHED_STATUSES:
            context.set_status(SessionStatus.IDLE)
        logger.info(f"Session {context.room_id or '-'} closed")

    def get_stats(self) -> dict:
        context = self.context
        return {
            'active': self.is_active,
            'sessions_started': self.sessions_started,
            'session': context.to_dict() if context else None,
            'peer': context.peer.get_stats() if context else None,
            'transport': context.transport.get_stats() if context else None,
            'router': self._router.get_stats() if context and self._router else None,
        }
