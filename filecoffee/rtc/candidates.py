"""
ICE Candidate Queue

Design Decision: When to apply remote candidates
================================================

Candidates travel over the relay independently of the offer/answer and
may be handled while the description is still being negotiated (the
offer handler is suspended fetching ICE servers or setting the remote
description). Adding a candidate before a remote description exists
fails.

Options Considered:
1. Retry addIceCandidate on a timer until it succeeds
   - Polling, order not guaranteed
2. Drop early candidates and rely on the ones embedded in the SDP
   - Loses trickled candidates, slower or failed connects
3. Queue until the remote description is committed, then drain once
   - Deterministic, preserves arrival order

Decision: Explicit FIFO queue gated by a "remote description set" flag
- push() while the flag is down
- drain() applies everything in order, then raises the flag
- The flag is raised only once the queue is empty, with no await in
  between, so a candidate that arrives mid-drain is queued behind the
  others instead of overtaking them
"""

import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import ProtocolError

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = 'candidate:'


def candidate_from_json(payload: dict) -> Optional[RTCIceCandidate]:
    """
    Parse a browser-style candidate dict.

    Expects {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}.

    Returns:
        The candidate, or None for the empty end-of-candidates marker

    Raises:
        ProtocolError: if the payload cannot be parsed
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"Candidate payload is not an object: {payload!r}")

    line = payload.get('candidate')
    if line is None:
        raise ProtocolError("Candidate payload has no 'candidate' field")
    if not line:
        return None

    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ProtocolError(f"Malformed ICE candidate {line!r}") from e

    candidate.sdpMid = payload.get('sdpMid')
    candidate.sdpMLineIndex = payload.get('sdpMLineIndex')
    return candidate


def candidate_to_json(candidate: RTCIceCandidate) -> dict:
    """Serialize a local candidate the way browsers do."""
    return {
        'candidate': CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


class CandidateQueue:
    """
    Remote candidates received before the remote description was set.

    One queue per session. reset() at the start of every new attempt.
    """

    def __init__(self):
        self._pending: Deque[RTCIceCandidate] = deque()
        self.remote_description_set = False
        self.drained = False

        # Statistics
        self.total_queued = 0
        self.total_applied = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[RTCIceCandidate]:
        return list(self._pending)

    def push(self, candidate: RTCIceCandidate):
        """Queue a candidate until drain()."""
        self._pending.append(candidate)
        self.total_queued += 1
        logger.debug(f"Queued ICE candidate ({len(self._pending)} pending)")

    async def drain(self, apply: Callable[[RTCIceCandidate], Awaitable[None]]) -> int:
        """
        Apply all queued candidates in arrival order, then open the gate.

        Must be called right after the remote description is committed.
        A second call in the same negotiation does nothing.

        Returns:
            Number of candidates applied
        """
        if self.drained:
            logger.warning("Candidate queue already drained for this negotiation")
            return 0

        applied = 0
        while self._pending:
            candidate = self._pending.popleft()
            try:
                await apply(candidate)
            except Exception as e:
                logger.warning(f"Failed to apply queued candidate: {e}")
                continue
            applied += 1
            self.total_applied += 1

        self.drained = True
        self.remote_description_set = True
        if applied:
            logger.info(f"Applied {applied} queued ICE candidates")
        return applied

    def reset(self, keep_pending: bool = False):
        """
        Close the gate for a new negotiation.

        keep_pending keeps candidates that already arrived for the
        negotiation about to start (an answerer can see them before the offer).
        """
        if self._pending and not keep_pending:
            logger.debug(f"Discarding {len(self._pending)} queued ICE candidates")
            self._pending.clear()
        self.remote_description_set = False
        self.drained = False
