"""
Shared fakes.

The data channel and peer connection fakes are pyee emitters, the same
event machinery aiortc's own classes use, so the code under test
registers and removes listeners exactly as it does in production.
"""

import asyncio
import itertools
from typing import List, Optional

import pytest
from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from filecoffee.config import Config
from filecoffee.errors import TransportError
from filecoffee.rtc.ice import IceServer
from filecoffee.signaling.messages import (
    PeerJoined, PeerLeft, RoomCreated, RoomJoined, ServerError, Signal,
)


def make_candidate(ip: str = "192.168.1.2", port: int = 5000) -> RTCIceCandidate:
    return RTCIceCandidate(
        component=1, foundation="1", ip=ip, port=port, priority=2130706431,
        protocol="udp", type="host", sdpMid="0", sdpMLineIndex=0,
    )


def candidate_payload(ip: str = "192.168.1.2", port: int = 5000) -> dict:
    return {
        'candidate': f"candidate:1 1 udp 2130706431 {ip} {port} typ host",
        'sdpMid': "0",
        'sdpMLineIndex': 0,
    }


class FakeDataChannel(AsyncIOEventEmitter):
    """In-memory RTCDataChannel. Linked channels deliver to each other."""

    def __init__(self, label: str = "fileTransfer", ready_state: str = "connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent: List = []
        self.remote: Optional["FakeDataChannel"] = None
        self.close_calls = 0

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError
        self.sent.append(data)
        if self.remote is not None:
            asyncio.get_event_loop().call_soon(self.remote.deliver, data)

    def deliver(self, data):
        if self.readyState == "open":
            self.emit("message", data)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def drain(self):
        """Pretend the transport flushed everything."""
        self.bufferedAmount = 0
        self.emit("bufferedamountlow")

    def close(self):
        self.close_calls += 1
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.remote is not None and self.remote.readyState != "closed":
            remote = self.remote
            asyncio.get_event_loop().call_soon(remote.close)


class FakePeerConnection(AsyncIOEventEmitter):
    """
    In-memory RTCPeerConnection.

    Records every call in order. With a network, an offerer and an answerer
    are linked when the offerer applies the answer.
    """

    _ids = itertools.count(1)

    def __init__(self, configuration=None, network=None,
                 local_candidates: Optional[List[RTCIceCandidate]] = None):
        super().__init__()
        self.id = next(self._ids)
        self.configuration = configuration
        self.network = network
        self.local_candidates = local_candidates or []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.channel: Optional[FakeDataChannel] = None
        self.calls: List[str] = []
        self.added_candidates: List[RTCIceCandidate] = []
        self.close_calls = 0
        self.fail_on: Optional[str] = None

    def _maybe_fail(self, name: str):
        self.calls.append(name)
        if self.fail_on == name:
            raise ValueError(f"{name} failed")

    def createDataChannel(self, label, ordered=True):
        self.calls.append("createDataChannel")
        self.channel = FakeDataChannel(label)
        return self.channel

    async def createOffer(self):
        self._maybe_fail("createOffer")
        return RTCSessionDescription(sdp=f"fake-offer-{self.id}", type="offer")

    async def createAnswer(self):
        self._maybe_fail("createAnswer")
        return RTCSessionDescription(sdp=f"fake-answer-{self.id}", type="answer")

    async def setLocalDescription(self, description):
        self._maybe_fail("setLocalDescription")
        await asyncio.sleep(0)
        self.localDescription = description
        if self.network is not None:
            self.network.register(description.sdp, self)
        for candidate in self.local_candidates:
            self.emit("icecandidate", candidate)

    async def setRemoteDescription(self, description):
        self._maybe_fail("setRemoteDescription")
        await asyncio.sleep(0)
        self.remoteDescription = description
        if self.network is not None and description.type == "answer":
            self.network.link(self, description.sdp)

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("addIceCandidate before remote description")
        self.calls.append("addIceCandidate")
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"
        if self.channel is not None:
            self.channel.close()


class FakeNetwork:
    """Links an offerer and an answerer connection through their SDP."""

    def __init__(self):
        self.by_sdp = {}
        self.connections: List[FakePeerConnection] = []
        self.local_candidates: List[RTCIceCandidate] = []

    def factory(self, configuration):
        pc = FakePeerConnection(configuration, network=self,
                                local_candidates=list(self.local_candidates))
        self.connections.append(pc)
        return pc

    def register(self, sdp, pc):
        self.by_sdp[sdp] = pc

    def link(self, offerer: FakePeerConnection, answer_sdp: str):
        answerer = self.by_sdp[answer_sdp]
        local = offerer.channel
        remote = FakeDataChannel(local.label)
        local.remote, remote.remote = remote, local
        answerer.channel = remote

        def connect():
            remote.readyState = "open"
            local.open()
            # aiortc announces the remote channel already open
            answerer.emit("datachannel", remote)

        asyncio.get_event_loop().call_soon(connect)


class FakeIceProvider:
    def __init__(self, servers=None, delay: float = 0):
        self.servers = servers or [IceServer(urls="stun:stun.example.com:3478")]
        self.delay = delay
        self.calls = 0

    def prefetch(self):
        pass

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.servers

    def reset(self):
        pass


class FakeTransport:
    """Signaling transport backed by a FakeRelay."""

    def __init__(self, relay: "FakeRelay", url: str = "ws://relay/ws", connect_timeout: float = 1.0):
        self.relay = relay
        self.url = url
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.connected = False
        self.fail_connect = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self):
        if self.fail_connect:
            raise TransportError("connection refused")
        self.connected = True

    async def send(self, message):
        if not self.connected:
            raise TransportError("Signaling connection is not open")
        self.sent.append(message)
        await self.relay.handle(self, message)

    async def send_signal(self, data: dict):
        await self.send(Signal(data=data))

    def push(self, message):
        self.inbox.put_nowait(message)

    async def messages(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            yield message

    async def close(self):
        if self.connected:
            self.connected = False
            self.inbox.put_nowait(None)

    def get_stats(self) -> dict:
        return {'url': self.url, 'connected': self.connected, 'messages_sent': len(self.sent)}


class FakeRelay:
    """Two-party room relay: CreateRoom, JoinRoom, Signal forwarding."""

    def __init__(self, room_id: str = "abcd12"):
        self.room_id = room_id
        self.owner: Optional[FakeTransport] = None
        self.guest: Optional[FakeTransport] = None
        self.transports: List[FakeTransport] = []

    def transport_factory(self, url, connect_timeout=10.0):
        transport = FakeTransport(self, url, connect_timeout)
        self.transports.append(transport)
        return transport

    def other(self, transport):
        return self.guest if transport is self.owner else self.owner

    async def handle(self, transport, message):
        if message.type == "CreateRoom":
            self.owner = transport
            transport.push(RoomCreated(room_id=self.room_id))
        elif message.type == "JoinRoom":
            if message.room_id != self.room_id:
                transport.push(ServerError(message="Room not found"))
                return
            self.guest = transport
            transport.push(RoomJoined())
            if self.owner is not None:
                self.owner.push(PeerJoined(peer_count=2))
        elif message.type == "Signal":
            other = self.other(transport)
            if other is not None:
                other.push(Signal(data=message.data))

    def leave(self, transport):
        other = self.other(transport)
        if other is not None:
            other.push(PeerLeft(peer_count=1))


@pytest.fixture
def config(tmp_path):
    return Config(download_dir=tmp_path / "downloads")


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def relay():
    return FakeRelay()


async def eventually(predicate, timeout: float = 2.0):
    """Poll until predicate() is true."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not predicate():
        if asyncio.get_event_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
