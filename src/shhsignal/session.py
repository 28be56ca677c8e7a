# src/shhsignal/session.py
"""
Session registry for shhsignal.

A session is keyed by its scoped session id (remote signer + raw token) and
holds either a queue of signals that arrived before a peer connection existed,
or the attached peer connection. Torn-down ids leave a tombstone so that late
or replayed messages cannot revive them.
"""

import time
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .robustness import InvalidStateError

logger = logging.getLogger(__name__)


class SessionRole(Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class SessionState(Enum):
    QUEUED = "QUEUED"  # signals raced ahead of the offer
    PENDING_OFFER = "PENDING_OFFER"  # offer received, application has not answered
    SIGNALING = "SIGNALING"
    CONNECTED = "CONNECTED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


TERMINAL_STATES = frozenset({SessionState.REJECTED, SessionState.TIMED_OUT, SessionState.CLOSED})


@dataclass
class Session:
    scoped_id: str
    raw_id: str
    role: SessionRole
    state: SessionState
    remote: Optional[Any] = None  # Identity of the counterpart, once known
    peer: Optional[Any] = None  # OrderedPeerConnection once attached
    pending_signals: Optional[list[dict[str, Any]]] = field(default_factory=list)
    result: Optional[Any] = None  # PendingResult for connect/accept
    request: Optional[Any] = None  # ConnectionRequest for responder sessions
    local_metadata: dict[str, Any] = field(default_factory=dict)
    remote_metadata: Optional[dict[str, Any]] = None

    @property
    def short_id(self) -> str:
        return self.scoped_id[-12:]


class SessionRegistry:
    """Owns every live session of one client instance."""

    def __init__(self, stale_session_ttl: float = 300.0, max_finalized: int = 4096):
        self.sessions: dict[str, Session] = {}
        self.stale_session_ttl = stale_session_ttl
        self.max_finalized = max_finalized
        self._finalized: OrderedDict[str, float] = OrderedDict()

    def create(self, scoped_id: str, raw_id: str, role: SessionRole, state: SessionState,
               remote: Optional[Any] = None) -> Session:
        """Create a session; an id may only be live once."""
        if scoped_id in self.sessions:
            raise InvalidStateError(f"Session {scoped_id[-12:]} already exists")
        session = Session(scoped_id=scoped_id, raw_id=raw_id, role=role, state=state, remote=remote)
        self.sessions[scoped_id] = session
        logger.debug(f"Created {role.value} session {session.short_id} in state {state.value}")
        return session

    def get(self, scoped_id: str) -> Optional[Session]:
        return self.sessions.get(scoped_id)

    def enqueue_signal(self, scoped_id: str, signal: dict[str, Any]) -> bool:
        """Append to a session's queue; False once a peer is attached."""
        session = self.sessions.get(scoped_id)
        if session is None or session.pending_signals is None:
            return False
        session.pending_signals.append(signal)
        return True

    def attach_peer(self, scoped_id: str, peer: Any) -> list[dict[str, Any]]:
        """Attach ``peer`` and hand back the queued signals in arrival order.

        The queue is discarded; later signals go straight to the peer.
        """
        session = self.sessions.get(scoped_id)
        if session is None:
            raise InvalidStateError(f"Session {scoped_id[-12:]} does not exist")
        if session.peer is not None:
            raise InvalidStateError(f"Session {session.short_id} already has a peer connection")
        queued = session.pending_signals or []
        session.peer = peer
        session.pending_signals = None
        return queued

    def remove(self, scoped_id: str) -> Optional[Session]:
        """Remove a session and tombstone its id. Returns None if already gone."""
        session = self.sessions.pop(scoped_id, None)
        if session is not None:
            self.finalize(scoped_id)
        return session

    def finalize(self, scoped_id: str):
        self._finalized[scoped_id] = time.monotonic()
        self._finalized.move_to_end(scoped_id)
        self.prune()

    def is_finalized(self, scoped_id: str) -> bool:
        self.prune()
        return scoped_id in self._finalized

    def prune(self):
        """Expire tombstones by age, then by count (oldest first)."""
        cutoff = time.monotonic() - self.stale_session_ttl
        while self._finalized:
            oldest_id, finalized_at = next(iter(self._finalized.items()))
            if finalized_at > cutoff and len(self._finalized) <= self.max_finalized:
                break
            del self._finalized[oldest_id]

    def list_sessions(self) -> list[Session]:
        return list(self.sessions.values())

    def peers(self) -> list[Any]:
        return [s.peer for s in self.sessions.values() if s.peer is not None]

    def clear(self):
        self.sessions.clear()
        self._finalized.clear()

    def __contains__(self, scoped_id: str) -> bool:
        return scoped_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)
