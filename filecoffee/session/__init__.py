"""
Session Module - Room Session Orchestration

The controller owns the session context and the signaling read loop;
the handlers react to relay messages for each role.
"""

from .context import SessionContext, SessionRole, SessionStatus
from .controller import SessionController
from .handlers import build_receiver_router, build_sender_router

__all__ = [
    'SessionContext',
    'SessionRole',
    'SessionStatus',
    'SessionController',
    'build_receiver_router',
    'build_sender_router',
]
