"""
Peer Connection Manager

Owns the one RTCPeerConnection and the one data channel of a session and
drives the offer/answer negotiation.

State machine:
```
IDLE --(PeerJoined | Signal{offer})--> NEGOTIATING --(channel open)--> CONNECTED
  ^                                        |                              |
  |                                        +----(PeerLeft/close/error)----+--> CLOSED
  +------------------- new attempt (after full teardown) -------------------------+
```

Offerer:  ICE servers -> connection -> data channel -> candidate callback
          -> createOffer -> setLocalDescription -> Signal{offer}
          ... Signal{answer} -> setRemoteDescription -> drain candidates
Answerer: ICE servers -> connection -> datachannel callback -> candidate callback
          -> setRemoteDescription(offer) -> drain candidates
          -> createAnswer -> setLocalDescription -> Signal{answer}

Every await is a point where PeerLeft or a newer attempt may have replaced
the connection. Each negotiation carries an attempt number and stops
quietly as soon as it is no longer the current one.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from aiortc import RTCPeerConnection, RTCSessionDescription

from ..errors import NegotiationError, ProtocolError, TransportError
from ..signaling.messages import SignalType, signal_payload
from .candidates import CandidateQueue, candidate_from_json, candidate_to_json
from .ice import IceServer, to_rtc_configuration

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "fileTransfer"

SendSignal = Callable[[dict], Awaitable[None]]
IceServerSource = Callable[[], Awaitable[List[IceServer]]]


class PeerState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


def default_peer_connection_factory(configuration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


def description_from_payload(payload: Any, expected: SignalType) -> RTCSessionDescription:
    """Build a session description from a Signal payload."""
    if not isinstance(payload, dict) or payload.get('type') != expected.value:
        raise NegotiationError(f"Expected an {expected.value} description, got {payload!r}")
    sdp = payload.get('sdp')
    if not isinstance(sdp, str) or not sdp:
        raise NegotiationError(f"{expected.value} has no SDP")
    return RTCSessionDescription(sdp=sdp, type=expected.value)


class PeerConnectionManager:
    """
    One peer connection plus one data channel, negotiated through the relay.

    Callbacks (all optional, set by the session):
        on_channel_open(channel)    data channel is open, state is CONNECTED
        on_channel_message(data)    str or bytes from the current channel
        on_channel_close()          the current channel closed
        on_state_change(state)      any state transition
    """

    def __init__(self, send_signal: SendSignal, ice_servers: IceServerSource,
                 candidates: Optional[CandidateQueue] = None,
                 peer_connection_factory: Callable = default_peer_connection_factory,
                 channel_label: str = DATA_CHANNEL_LABEL):
        self.send_signal = send_signal
        self.ice_servers = ice_servers
        self.candidates = candidates if candidates is not None else CandidateQueue()
        self.peer_connection_factory = peer_connection_factory
        self.channel_label = channel_label

        self.pc = None
        self.channel = None
        self.state = PeerState.IDLE
        self._attempt = 0

        self.on_channel_open: Optional[Callable[[Any], None]] = None
        self.on_channel_message: Optional[Callable[[Any], None]] = None
        self.on_channel_close: Optional[Callable[[], None]] = None
        self.on_state_change: Optional[Callable[[PeerState], None]] = None

        # Statistics
        self.connections_created = 0
        self.connections_closed = 0

    @property
    def is_connected(self) -> bool:
        return self.state == PeerState.CONNECTED

    def _set_state(self, state: PeerState):
        if state == self.state:
            return
        logger.info(f"Peer connection: {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _is_current(self, attempt: int) -> bool:
        return attempt == self._attempt

    # === Negotiation ===

    async def _begin_attempt(self, keep_pending_candidates: bool = False) -> int:
        """Tear down any previous connection and start a clean attempt."""
        if self.pc is not None or self.channel is not None:
            await self.close(keep_pending_candidates=keep_pending_candidates)
        else:
            self.candidates.reset(keep_pending=keep_pending_candidates)

        self._attempt += 1
        self._set_state(PeerState.IDLE)
        self._set_state(PeerState.NEGOTIATING)
        return self._attempt

    async def _build_connection(self, attempt: int):
        """Await the ICE servers and construct the connection. None if superseded."""
        servers = await self.ice_servers()
        if not self._is_current(attempt):
            logger.debug("Negotiation superseded while fetching ICE servers")
            return None

        pc = self.peer_connection_factory(to_rtc_configuration(servers))
        self.pc = pc
        self.connections_created += 1

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            await self._send_local_candidate(pc, candidate)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Connection state: {pc.connectionState}")

        return pc

    async def start_offer(self):
        """
        Offerer path, triggered by PeerJoined.

        Raises:
            NegotiationError: offer creation or description failed
                (the connection is closed before raising)
        """
        attempt = await self._begin_attempt()
        pc = await self._build_connection(attempt)
        if pc is None:
            return

        channel = pc.createDataChannel(self.channel_label, ordered=True)
        self._attach_channel(channel)

        try:
            offer = await pc.createOffer()
            if not self._is_current(attempt):
                return
            await pc.setLocalDescription(offer)
            if not self._is_current(attempt):
                return
        except Exception as e:
            await self._fail(attempt, f"Failed to create connection offer: {e}", e)
            return

        await self.send_signal(signal_payload(pc.localDescription))
        logger.info("Sent offer")

    async def accept_offer(self, payload: dict):
        """
        Answerer path, triggered by Signal{offer}.

        Candidates that arrived before the offer stay queued and are applied
        right after the remote description is set.

        Raises:
            NegotiationError: description or answer failed
        """
        attempt = await self._begin_attempt(keep_pending_candidates=True)
        try:
            offer = description_from_payload(payload, SignalType.OFFER)
        except NegotiationError as e:
            await self._fail(attempt, str(e), e)
            return

        pc = await self._build_connection(attempt)
        if pc is None:
            return

        @pc.on("datachannel")
        def on_datachannel(channel):
            if pc is not self.pc:
                return
            logger.info(f"Data channel received: {channel.label}")
            self._attach_channel(channel)
            # aiortc announces remote channels once they are already open
            if channel.readyState == "open":
                self._on_channel_open(channel)

        try:
            await pc.setRemoteDescription(offer)
            if not self._is_current(attempt):
                return
            await self.candidates.drain(pc.addIceCandidate)
            if not self._is_current(attempt):
                return
            answer = await pc.createAnswer()
            if not self._is_current(attempt):
                return
            await pc.setLocalDescription(answer)
            if not self._is_current(attempt):
                return
        except Exception as e:
            await self._fail(attempt, f"Failed to answer the offer: {e}", e)
            return

        await self.send_signal(signal_payload(pc.localDescription))
        logger.info("Sent answer")

    async def accept_answer(self, payload: dict):
        """
        Offerer receives Signal{answer}.

        Raises:
            NegotiationError: the answer could not be applied
        """
        pc = self.pc
        if pc is None or self.state != PeerState.NEGOTIATING:
            logger.warning(f"Ignoring answer in state {self.state.value}")
            return
        attempt = self._attempt

        try:
            answer = description_from_payload(payload, SignalType.ANSWER)
            await pc.setRemoteDescription(answer)
        except Exception as e:
            await self._fail(attempt, f"Failed to apply answer: {e}", e)
            return

        if not self._is_current(attempt):
            return
        await self.candidates.drain(pc.addIceCandidate)

    async def add_candidate(self, payload: Any):
        """
        Apply a remote candidate now, or queue it until the remote
        description is committed.
        """
        try:
            candidate = candidate_from_json(payload)
        except ProtocolError as e:
            logger.warning(f"Dropping candidate: {e}")
            return

        if candidate is None:
            logger.debug("Remote end of candidates")
            return

        pc = self.pc
        if pc is None or not self.candidates.remote_description_set:
            self.candidates.push(candidate)
            return

        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate: {e}")

    async def _send_local_candidate(self, pc, candidate):
        if candidate is None or pc is not self.pc:
            return
        try:
            await self.send_signal({
                'type': SignalType.CANDIDATE.value,
                'candidate': candidate_to_json(candidate),
            })
        except TransportError as e:
            logger.warning(f"Could not send local candidate: {e}")

    async def _fail(self, attempt: int, reason: str, cause: Exception):
        """Close the connection of a failed attempt and raise NegotiationError."""
        if not self._is_current(attempt):
            logger.debug(f"Ignoring failure of superseded negotiation: {reason}")
            return
        logger.error(reason)
        await self.close()
        raise NegotiationError(reason) from cause

    # === Data channel ===

    def _attach_channel(self, channel):
        self.channel = channel

        @channel.on("open")
        def on_open():
            self._on_channel_open(channel)

        @channel.on("message")
        def on_message(data):
            if channel is self.channel and self.on_channel_message:
                self.on_channel_message(data)

        @channel.on("close")
        def on_close():
            if channel is not self.channel:
                return
            logger.info("Data channel closed")
            if self.on_channel_close:
                self.on_channel_close()

    def _on_channel_open(self, channel):
        if channel is not self.channel or self.state == PeerState.CONNECTED:
            return
        logger.info("Data channel open")
        self._set_state(PeerState.CONNECTED)
        if self.on_channel_open:
            self.on_channel_open(channel)

    # === Teardown ===

    async def close(self, keep_pending_candidates: bool = False):
        """
        Close the channel and the connection and clear all references.

        Safe to call repeatedly: each connection is closed exactly once.
        """
        self._attempt += 1
        pc, channel = self.pc, self.channel
        self.pc = None
        self.channel = None
        self.candidates.reset(keep_pending=keep_pending_candidates)

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.warning(f"Error closing data channel: {e}")
            channel.remove_all_listeners()

        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
            pc.remove_all_listeners()
            self.connections_closed += 1

        self._set_state(PeerState.CLOSED)

    def get_stats(self) -> dict:
        return {
            'state': self.state.value,
            'connections_created': self.connections_created,
            'connections_closed': self.connections_closed,
            'queued_candidates': len(self.candidates),
            'candidates_applied': self.candidates.total_applied,
        }
