"""
Session Handlers

What each role does with each server message, plus what happens when the
data channel opens. Handlers turn every failure into visible session
state; nothing raised here is expected to reach the router.

Sharing (offerer):   RoomCreated, PeerJoined, PeerLeft, Signal, Error
Receiving (answerer): RoomJoined, PeerLeft, Signal, Error, RoomExists
"""

import logging

from ..errors import NegotiationError
from ..signaling.messages import (
    PeerJoined, PeerLeft, RoomCreated, RoomExists, RoomJoined, ServerError,
    ServerMessageType, Signal, SignalType,
)
from ..signaling.router import MessageRouter
from ..transfer.receiver import FileReceiver, ReceivedFile, save_received_file
from ..transfer.sender import FileSender, SendProgress
from .context import SessionContext, SessionRole, SessionStatus

logger = logging.getLogger(__name__)


def share_url_for(public_url: str, room_id: str) -> str:
    return f"{public_url.rstrip('/')}/download/{room_id}"


# === Handlers shared by both roles ===

async def handle_peer_left(message: PeerLeft, context: SessionContext):
    logger.info(f"Peer left room {context.room_id}")
    context.cancel_transfer()
    await context.peer.close()
    # a received artifact may still be saving; that outcome decides the status
    if context.status != SessionStatus.COMPLETE and context.received is None:
        context.set_status(SessionStatus.DISCONNECTED, error="The other peer left the room")


async def handle_error(message: ServerError, context: SessionContext):
    error = message.message
    if message.code:
        logger.debug(f"Server error code {message.code}")
    if context.status in (SessionStatus.CONNECTING, SessionStatus.WAITING_FOR_PEER):
        context.fail(error)
    else:
        logger.error(f"Server error: {error}")
        context.error = error
        context.notify()


async def handle_signal(message: Signal, context: SessionContext):
    """Dispatch the negotiation payload by its inner type."""
    signal_type = message.signal_type
    data = message.data
    peer = context.peer

    try:
        if signal_type == SignalType.CANDIDATE:
            await peer.add_candidate(data.get('candidate'))
        elif signal_type == SignalType.OFFER and context.role == SessionRole.ANSWERER:
            context.reset_transfer()
            context.set_status(SessionStatus.NEGOTIATING)
            await peer.accept_offer(data)
        elif signal_type == SignalType.ANSWER and context.role == SessionRole.OFFERER:
            await peer.accept_answer(data)
        else:
            logger.warning(f"Ignoring signal {data!r} as {context.role.value}")
    except NegotiationError as e:
        context.fail(f"Connection failed: {e}")


# === Sharing ===

async def handle_room_created(message: RoomCreated, context: SessionContext):
    context.room_id = message.room_id
    context.share_url = share_url_for(context.config.public_url, message.room_id)
    logger.info(f"Room {message.room_id} created, share {context.share_url}")
    context.set_status(SessionStatus.WAITING_FOR_PEER)


async def handle_peer_joined(message: PeerJoined, context: SessionContext):
    logger.info(f"Peer joined room {context.room_id}")
    context.reset_transfer()
    context.set_status(SessionStatus.NEGOTIATING)
    try:
        await context.peer.start_offer()
    except NegotiationError as e:
        context.fail(f"Connection failed: {e}")


async def _run_sender(sender: FileSender, channel, context: SessionContext):
    progress = await sender.send(channel)
    if not progress.is_finished:
        progress = await sender.wait_finished()

    if sender is not context.sender:
        return
    if progress.phase == 'complete':
        context.update_progress(progress.bytes_sent, 100)
        context.set_status(SessionStatus.COMPLETE)
    elif progress.phase == 'failed':
        context.fail(progress.error or "Transfer failed", SessionStatus.FAILED)
    elif context.status != SessionStatus.COMPLETE:
        context.set_status(SessionStatus.DISCONNECTED, error="Connection closed before the transfer finished")


def start_sending(context: SessionContext, channel):
    """Channel open on the sharing side: pump the selected file."""
    def on_progress(progress: SendProgress):
        if sender is context.sender:
            context.update_progress(progress.bytes_sent, progress.acknowledged_percent)

    config = context.config
    sender = FileSender(
        context.file_path,
        chunk_size=config.chunk_size,
        max_buffered_amount=config.max_buffered_amount,
        buffered_amount_low_threshold=config.buffered_amount_low_threshold,
        progress_callback=on_progress,
    )
    context.sender = sender
    context.file_name = context.file_path.name
    context.peer.on_channel_message = sender.handle_message
    context.set_status(SessionStatus.TRANSFERRING)
    context.start_transfer(_run_sender(sender, channel, context))


def build_sender_router() -> MessageRouter:
    router = MessageRouter("sender")
    router.set_handler(ServerMessageType.ROOM_CREATED, handle_room_created)
    router.set_handler(ServerMessageType.PEER_JOINED, handle_peer_joined)
    router.set_handler(ServerMessageType.PEER_LEFT, handle_peer_left)
    router.set_handler(ServerMessageType.SIGNAL, handle_signal)
    router.set_handler(ServerMessageType.ERROR, handle_error)
    return router


# === Receiving ===

async def handle_room_joined(message: RoomJoined, context: SessionContext):
    logger.info(f"Joined room {context.room_id}, waiting for offer")
    context.set_status(SessionStatus.WAITING_FOR_PEER)


async def handle_room_exists(message: RoomExists, context: SessionContext):
    context.room_has_password = message.has_password
    if not message.exists:
        context.fail(f"Room not found or has expired: {context.room_id}")


async def _save(received: ReceivedFile, context: SessionContext):
    try:
        await save_received_file(received, context.download_dir or context.config.download_dir)
    except OSError as e:
        context.fail(f"Could not save {received.name}: {e}", SessionStatus.FAILED)
        return
    context.set_status(SessionStatus.COMPLETE)


def start_receiving(context: SessionContext, channel):
    """Channel open on the receiving side: reassemble whatever arrives."""
    receiver = FileReceiver(channel.send, progress_step=context.config.progress_step)

    def on_file_started(metadata):
        context.file_name = metadata.name
        context.file_size = metadata.size
        context.received = None
        context.update_progress(0, 0)
        context.set_status(SessionStatus.TRANSFERRING)

    def on_progress(progress):
        context.update_progress(progress.received_bytes, progress.percent)

    def on_complete(received: ReceivedFile):
        context.received = received
        context.update_progress(received.size, 100)
        context.spawn(_save(received, context))

    def on_error(error: str):
        context.fail(error, SessionStatus.FAILED)

    receiver.on_file_started = on_file_started
    receiver.on_progress = on_progress
    receiver.on_complete = on_complete
    receiver.on_error = on_error

    context.receiver = receiver
    context.peer.on_channel_message = receiver.handle_message
    context.set_status(SessionStatus.CONNECTED)


def build_receiver_router() -> MessageRouter:
    router = MessageRouter("receiver")
    router.set_handler(ServerMessageType.ROOM_JOINED, handle_room_joined)
    router.set_handler(ServerMessageType.PEER_LEFT, handle_peer_left)
    router.set_handler(ServerMessageType.SIGNAL, handle_signal)
    router.set_handler(ServerMessageType.ERROR, handle_error)
    router.set_handler(ServerMessageType.ROOM_EXISTS, handle_room_exists)
    return router


# === Peer callbacks ===

def attach_peer(context: SessionContext):
    """Wire the peer connection's channel events to the session."""
    peer = context.peer

    def on_channel_open(channel):
        if context.role == SessionRole.OFFERER:
            start_sending(context, channel)
        else:
            start_receiving(context, channel)

    def on_channel_close():
        if context.received is not None:
            return
        if context.status in (SessionStatus.CONNECTED, SessionStatus.TRANSFERRING):
            if context.role == SessionRole.OFFERER and context.sender is not None:
                # the sender task decides between complete and disconnected
                return
            context.set_status(SessionStatus.DISCONNECTED, error="Data channel closed")

    peer.on_channel_open = on_channel_open
    peer.on_channel_close = on_channel_close
