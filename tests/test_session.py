import json

import pytest

from filecoffee.errors import RoomNotFoundError, TransferError
from filecoffee.rtc.peer import PeerState
from filecoffee.session import SessionController, SessionStatus
from filecoffee.signaling.messages import PeerJoined, PeerLeft, RoomExists
from filecoffee.transfer.receiver import FileReceiver

from .conftest import FakeIceProvider, eventually, make_candidate


def controller_for(config, relay, network, transport_factory=None) -> SessionController:
    return SessionController(
        config,
        transport_factory=transport_factory or relay.transport_factory,
        peer_connection_factory=network.factory,
        ice_provider=FakeIceProvider(),
    )


async def run_transfer(tmp_path, config, relay, network, name: str, data: bytes):
    path = tmp_path / name
    path.write_bytes(data)

    sender = controller_for(config, relay, network)
    receiver = controller_for(config, relay, network)
    try:
        sending = await sender.share(path)
        await eventually(lambda: sending.status == SessionStatus.WAITING_FOR_PEER)

        receiving = await receiver.receive(sending.room_id, check=False)
        assert await receiving.wait_finished(timeout=5) == SessionStatus.COMPLETE
        assert await sending.wait_finished(timeout=5) == SessionStatus.COMPLETE
        return sending, receiving
    finally:
        await sender.close()
        await receiver.close()


async def test_one_mebibyte_transfer(tmp_path, config, relay, network):
    network.local_candidates = [make_candidate()]
    data = bytes(range(256)) * 4096

    sending, receiving = await run_transfer(tmp_path, config, relay, network, "photo.jpg", data)

    assert sending.room_id == "abcd12"
    assert sending.share_url == "http://localhost:8080/download/abcd12"

    # metadata, then 4 chunks of 256 KiB
    channel_sent = network.connections[0].channel.sent
    assert json.loads(channel_sent[0]) == {
        'type': 'metadata', 'fileName': 'photo.jpg', 'fileSize': 1048576, 'fileType': 'image/jpeg',
    }
    assert [len(c) for c in channel_sent[1:]] == [262144] * 4

    assert receiving.receiver.progress.reports == [25, 50, 75, 100]
    assert sending.sender.progress.acknowledged_percent == 100

    received = receiving.received
    assert received.name == "photo.jpg"
    assert received.data == data
    assert received.saved_path.parent == config.download_dir
    assert received.saved_path.read_bytes() == data

    # both sides exchanged and applied candidates
    offerer, answerer = network.connections
    assert offerer.added_candidates and answerer.added_candidates


async def test_zero_byte_transfer(tmp_path, config, relay, network):
    sending, receiving = await run_transfer(tmp_path, config, relay, network, "empty.txt", b"")

    assert receiving.receiver.progress.reports == [100]
    assert receiving.received.data == b""
    assert receiving.received.saved_path.read_bytes() == b""


async def test_peer_left_disconnects_and_new_peer_renegotiates(tmp_path, config, relay, network):
    path = tmp_path / "doc.txt"
    path.write_text("hello")
    controller = controller_for(config, relay, network)
    try:
        context = await controller.share(path)
        await eventually(lambda: context.status == SessionStatus.WAITING_FOR_PEER)

        relay.owner.push(PeerJoined(peer_count=2))
        await eventually(lambda: len(network.connections) == 1 and context.peer.pc is not None)
        first = network.connections[0]

        relay.owner.push(PeerLeft(peer_count=1))
        await eventually(lambda: context.status == SessionStatus.DISCONNECTED)
        assert context.peer.state == PeerState.CLOSED
        assert first.close_calls == 1
        assert context.error

        relay.owner.push(PeerJoined(peer_count=2))
        await eventually(lambda: len(network.connections) == 2)
        assert context.status == SessionStatus.NEGOTIATING
        assert first.close_calls == 1
    finally:
        await controller.close()


async def test_server_error_dismisses_connecting(config, relay, network):
    controller = controller_for(config, relay, network)
    try:
        context = await controller.receive("nope99", check=False)
        status = await context.wait_finished(timeout=2)

        assert status == SessionStatus.IDLE
        assert context.error == "Room not found"
    finally:
        await controller.close()


async def test_room_exists_false_fails_session(config, relay, network):
    controller = controller_for(config, relay, network)
    try:
        context = await controller.receive("abcd12", check=False)
        relay.guest.push(RoomExists(exists=False))
        await context.wait_finished(timeout=2)

        assert context.status == SessionStatus.IDLE
        assert "abcd12" in context.error
    finally:
        await controller.close()


async def test_unreachable_relay_returns_to_idle(config, relay, network):
    def failing_factory(url, connect_timeout):
        transport = relay.transport_factory(url, connect_timeout)
        transport.fail_connect = True
        return transport

    controller = controller_for(config, relay, network, transport_factory=failing_factory)
    context = await controller.receive("abcd12", check=False)

    assert context.status == SessionStatus.IDLE
    assert "Unable to connect" in context.error
    assert context.is_finished
    await controller.close()


async def test_missing_room_skips_websocket(config, relay, network, monkeypatch):
    controller = controller_for(config, relay, network)

    async def not_found(room_id):
        raise RoomNotFoundError(room_id)

    monkeypatch.setattr(controller, "check_room", not_found)
    context = await controller.receive("gone00")

    assert context.status == SessionStatus.IDLE
    assert "gone00" in context.error
    assert not relay.transports[0].connected
    await controller.close()


async def test_share_requires_a_file(tmp_path, config, relay, network):
    controller = controller_for(config, relay, network)
    with pytest.raises(TransferError):
        await controller.share(tmp_path / "missing.bin")
    assert controller.context is None


async def test_new_session_tears_down_previous(tmp_path, config, relay, network):
    path = tmp_path / "a.txt"
    path.write_text("a")
    controller = controller_for(config, relay, network)
    try:
        first = await controller.share(path)
        await eventually(lambda: first.status == SessionStatus.WAITING_FOR_PEER)

        second = await controller.share(path)

        assert first.closed
        assert first.is_finished
        assert not relay.transports[0].connected
        assert controller.context is second
        assert controller.sessions_started == 2
    finally:
        await controller.close()


async def test_listeners_see_status_changes(tmp_path, config, relay, network):
    path = tmp_path / "a.txt"
    path.write_text("a")
    controller = controller_for(config, relay, network)
    seen = []
    try:
        context = await controller.share(path)
        context.add_listener(lambda c: seen.append(c.status))
        await eventually(lambda: SessionStatus.WAITING_FOR_PEER in seen)
        stats = controller.get_stats()
        assert stats['session']['room_id'] == "abcd12"
        assert stats['active']
        assert stats['router']['name'] == "sender"
        assert stats['router']['routed'] >= 1
    finally:
        await controller.close()
    assert seen[-1] == SessionStatus.IDLE


async def test_channel_closing_before_final_ack_disconnects_sender(
        tmp_path, config, relay, network, monkeypatch):
    monkeypatch.setattr(FileReceiver, "_report", lambda self, percent: None)
    path = tmp_path / "notes.txt"
    path.write_bytes(b"x" * 5000)

    sender = controller_for(config, relay, network)
    receiver = controller_for(config, relay, network)
    try:
        sending = await sender.share(path)
        await eventually(lambda: sending.status == SessionStatus.WAITING_FOR_PEER)
        receiving = await receiver.receive(sending.room_id, check=False)
        assert await receiving.wait_finished(timeout=5) == SessionStatus.COMPLETE

        await eventually(lambda: sending.sender is not None and sending.sender.progress.phase == 'sent')
        assert sending.status == SessionStatus.TRANSFERRING

        network.connections[0].channel.close()

        assert await sending.wait_finished(timeout=2) == SessionStatus.DISCONNECTED
        assert sending.error
    finally:
        await sender.close()
        await receiver.close()


async def test_relay_loss_during_negotiation_closes_peer(tmp_path, config, relay, network):
    path = tmp_path / "a.txt"
    path.write_text("a")
    controller = controller_for(config, relay, network)
    try:
        context = await controller.share(path)
        await eventually(lambda: context.status == SessionStatus.WAITING_FOR_PEER)
        relay.owner.push(PeerJoined(peer_count=2))
        await eventually(lambda: context.peer.pc is not None)

        relay.owner.push(None)

        assert await context.wait_finished(timeout=2) == SessionStatus.IDLE
        assert context.error == "Signaling connection closed"
        assert context.peer.state == PeerState.CLOSED
        assert network.connections[0].close_calls == 1
    finally:
        await controller.close()


async def test_relay_loss_keeps_open_data_channel(tmp_path, config, relay, network, monkeypatch):
    monkeypatch.setattr(FileReceiver, "_report", lambda self, percent: None)
    path = tmp_path / "notes.txt"
    path.write_bytes(b"x" * 5000)

    sender = controller_for(config, relay, network)
    receiver = controller_for(config, relay, network)
    try:
        sending = await sender.share(path)
        await eventually(lambda: sending.status == SessionStatus.WAITING_FOR_PEER)
        receiving = await receiver.receive(sending.room_id, check=False)
        await receiving.wait_finished(timeout=5)
        await eventually(lambda: sending.sender is not None and sending.sender.progress.phase == 'sent')

        relay.owner.push(None)
        await eventually(lambda: sending.error == "Signaling connection closed")

        assert sending.status == SessionStatus.TRANSFERRING
        assert sending.peer.state == PeerState.CONNECTED

        # the final ack still lands over the data channel
        sending.sender.handle_message('{"type": "progress", "percent": 100}')
        assert await sending.wait_finished(timeout=2) == SessionStatus.COMPLETE
    finally:
        await sender.close()
        await receiver.close()
