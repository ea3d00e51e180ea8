"""
Session Context

The state of one room session, shared by every handler of the session's
router. Only the session controller creates it; handlers mutate it and
anything that displays it (CLI, local API) subscribes with add_listener().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional, Set

from ..config import Config
from ..rtc.peer import PeerConnectionManager
from ..transfer.receiver import FileReceiver, ReceivedFile
from ..transfer.sender import FileSender

logger = logging.getLogger(__name__)


class SessionRole(str, Enum):
    OFFERER = "offerer"    # shares a file, creates the room
    ANSWERER = "answerer"  # receives a file, joins the room


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    WAITING_FOR_PEER = "waiting_for_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


FINISHED_STATUSES = {SessionStatus.COMPLETE, SessionStatus.DISCONNECTED, SessionStatus.FAILED}

# Listener type
SessionListener = Callable[["SessionContext"], None]


@dataclass
class SessionContext:
    """Everything a handler needs, and everything a UI shows."""
    role: SessionRole
    config: Config
    transport: Any
    peer: PeerConnectionManager

    # Room
    room_id: Optional[str] = None
    password: Optional[str] = None
    share_url: Optional[str] = None
    room_has_password: Optional[bool] = None

    # Lifecycle
    status: SessionStatus = SessionStatus.IDLE
    error: Optional[str] = None
    closed: bool = False

    # Transfer
    file_path: Optional[Path] = None
    download_dir: Optional[Path] = None
    file_name: Optional[str] = None
    file_size: int = 0
    bytes_transferred: int = 0
    percent: int = 0
    sender: Optional[FileSender] = None
    receiver: Optional[FileReceiver] = None
    received: Optional[ReceivedFile] = None
    transfer_task: Optional[asyncio.Task] = None

    listeners: List[SessionListener] = field(default_factory=list)
    _tasks: Set[asyncio.Task] = field(default_factory=set)
    _finished: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_finished(self) -> bool:
        """True once the session reached an end state, was closed, or went back to IDLE on error."""
        if self.closed or self.status in FINISHED_STATUSES:
            return True
        return self.status == SessionStatus.IDLE and self.error is not None

    def add_listener(self, listener: SessionListener):
        self.listeners.append(listener)

    def notify(self):
        for listener in list(self.listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")

    def set_status(self, status: SessionStatus, error: Optional[str] = None):
        if error is not None:
            self.error = error
        if status != self.status:
            logger.info(f"Session {self.room_id or '-'}: {self.status.value} -> {status.value}")
            self.status = status
        if self.is_finished:
            self._finished.set()
        self.notify()

    def fail(self, error: str, status: SessionStatus = SessionStatus.IDLE):
        """Record an error and move to a resting status (IDLE unless told otherwise)."""
        logger.error(error)
        self.set_status(status, error=error)

    def update_progress(self, bytes_transferred: int, percent: int):
        self.bytes_transferred = bytes_transferred
        self.percent = percent
        self.notify()

    def reset_transfer(self):
        """Forget the previous attempt's transfer state."""
        self.cancel_transfer()
        self.sender = None
        self.receiver = None
        self.received = None
        self.file_size = 0
        self.bytes_transferred = 0
        self.percent = 0

    async def wait_finished(self, timeout: Optional[float] = None) -> SessionStatus:
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.status

    # === Tasks ===

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run a coroutine as a task owned by this session."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_transfer(self, coro: Coroutine) -> asyncio.Task:
        self.cancel_transfer()
        self.transfer_task = self.spawn(coro)
        return self.transfer_task

    def cancel_transfer(self):
        if self.transfer_task is not None and not self.transfer_task.done():
            self.transfer_task.cancel()
        self.transfer_task = None

    async def cancel_tasks(self):
        """Cancel every task of this session except the caller's own."""
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.transfer_task = None

    def to_dict(self) -> dict:
        return {
            'role': self.role.value,
            'status': self.status.value,
            'error': self.error,
            'room_id': self.room_id,
            'share_url': self.share_url,
            'room_has_password': self.room_has_password,
            'peer_state': self.peer.state.value,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'bytes_transferred': self.bytes_transferred,
            'percent': self.percent,
            'received': self.received.to_dict() if self.received else None,
        }
