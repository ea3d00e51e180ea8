"""
RTC Module - Peer Connection, ICE Servers and Candidates

Wraps aiortc for a single offer/answer negotiation per attempt.
"""

from .candidates import CandidateQueue, candidate_from_json, candidate_to_json
from .ice import IceServer, IceServerProvider, fetch_ice_servers
from .peer import DATA_CHANNEL_LABEL, PeerConnectionManager, PeerState

__all__ = [
    'CandidateQueue',
    'candidate_from_json',
    'candidate_to_json',
    'IceServer',
    'IceServerProvider',
    'fetch_ice_servers',
    'DATA_CHANNEL_LABEL',
    'PeerConnectionManager',
    'PeerState',
]
