# src/shhsignal/handshake.py
"""
Handshake state machine for shhsignal.

Implements the four message kinds (discover, offer, signal, reject) and the two
ways a session starts: ``connect`` on the initiator, and ``accept``/``reject``
of an incoming ``ConnectionRequest`` on the responder.

Session lifecycle::

    initiator:  SIGNALING -> CONNECTED | REJECTED | TIMED_OUT | CLOSED
    responder:  [QUEUED ->] PENDING_OFFER -> SIGNALING -> CONNECTED | ...
                            PENDING_OFFER -> REJECTED | TIMED_OUT

Every terminal transition goes through ``teardown``, which is idempotent and
tombstones the scoped id so that stale messages are ignored.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from . import codec
from .bus import TOPIC_OFFER, TOPIC_REJECT, TOPIC_SIGNAL, Envelope, BusMessage, MessageBus
from .dispatch import scope_session_id
from .events import EventEmitter
from .ordering import OrderedPeerConnection
from .peer import PeerFactory
from .robustness import (
    ConnectionTimeout,
    HandshakeError,
    InvalidStateError,
    NotReadyError,
    PrematureClose,
    Rejected,
    log_with_context,
)
from .session import Session, SessionRegistry, SessionRole, SessionState
from .timers import TimerManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Public identity of a participant: encryption key and signing key."""

    public_key: str
    signature_key: str


@dataclass(frozen=True)
class LocalKeys:
    """Key ids held by the bus on behalf of one client instance."""

    identity: Identity
    sig_key_id: str
    key_pair_id: str
    room_key_id: str


@dataclass
class ConnectResult:
    peer: OrderedPeerConnection
    metadata: Any


def new_session_id() -> str:
    """Raw session token; only needs to be unique for this client."""
    return secrets.token_hex(12)


class PendingResult:
    """Single-settlement outcome of one handshake attempt.

    Await it to get a ``ConnectResult`` or a ``HandshakeError``. ``resolve`` and
    ``fail`` return False once the result has already settled.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.future.add_done_callback(self._retrieve)

    def _retrieve(self, future: asyncio.Future):
        # Results the application never awaits must not warn at collection time
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug(f"Handshake {self.session_id[-12:]} failed: {error}")

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, peer: OrderedPeerConnection, metadata: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(ConnectResult(peer, metadata))
        return True

    def fail(self, error: HandshakeError) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True

    def __await__(self):
        return self.future.__await__()

    def __repr__(self):
        state = "pending" if not self.future.done() else "settled"
        return f"<PendingResult {self.session_id[-12:]} {state}>"


class ConnectionRequest:
    """An incoming offer awaiting the application's decision."""

    def __init__(self, handshake: "Handshake", session: Session, metadata: Any, initiator: Identity):
        self._handshake = handshake
        self.session = session
        self.metadata = metadata
        self.initiator = initiator
        self.answered = False

    @property
    def session_id(self) -> str:
        return self.session.scoped_id

    def accept(self, metadata: Any = None, peer_options: Optional[dict[str, Any]] = None) -> PendingResult:
        return self._handshake.accept(self, {} if metadata is None else metadata, peer_options)

    def reject(self, metadata: Any = None):
        self._handshake.reject(self, {} if metadata is None else metadata)


class Handshake:
    """Per-client handshake logic over a session registry and timers."""

    def __init__(self, bus: MessageBus, registry: SessionRegistry, timers: TimerManager,
                 events: EventEmitter, peer_factory: PeerFactory):
        self.bus = bus
        self.registry = registry
        self.timers = timers
        self.events = events
        self.peer_factory = peer_factory
        self.keys: Optional[LocalKeys] = None
        self._tasks: set[asyncio.Task] = set()

    # -- outbound ---------------------------------------------------------

    def _require_keys(self) -> LocalKeys:
        if self.keys is None:
            raise NotReadyError()
        return self.keys

    def _send(self, topic: str, payload: dict[str, Any], recipient: str):
        keys = self.keys
        if keys is None:
            logger.debug("Client destroyed; dropping outbound message")
            return
        envelope = Envelope(topic=topic, payload=codec.encode(payload), sig=keys.sig_key_id, pub_key=recipient)
        task = asyncio.ensure_future(self.bus.post(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._post_done)

    def _post_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_with_context(f"Bus post failed: {error}", "error", {"error_type": type(error).__name__})

    async def flush(self):
        """Wait until every scheduled post has been handed to the bus."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_posts(self):
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # -- peers ------------------------------------------------------------

    def _create_peer(self, initiator: bool, peer_options: Optional[dict[str, Any]]) -> OrderedPeerConnection:
        options = dict(peer_options or {})
        options["initiator"] = initiator
        return OrderedPeerConnection(self.peer_factory(**options))

    def _watch(self, session: Session, peer: OrderedPeerConnection):
        scoped_id = session.scoped_id
        peer.inner.once("close", lambda: self._on_peer_close(scoped_id, peer))
        peer.when_connected(lambda p: self._on_peer_connect(scoped_id, p))

    def _on_peer_connect(self, scoped_id: str, peer: OrderedPeerConnection):
        session = self.registry.get(scoped_id)
        if session is None or session.peer is not peer:
            return
        session.state = SessionState.CONNECTED
        self._maybe_settle(session)

    def _on_peer_close(self, scoped_id: str, peer: OrderedPeerConnection):
        session = self.registry.get(scoped_id)
        if session is None or session.peer is not peer:
            return
        if session.result is not None and session.result.fail(PrematureClose()):
            logger.info(f"Session {session.short_id} closed before the handshake completed")
        self.teardown(scoped_id, SessionState.CLOSED)

    def _maybe_settle(self, session: Session):
        result = session.result
        if result is None or result.done or session.peer is None or not session.peer.connected:
            return
        if session.role is SessionRole.INITIATOR:
            if session.remote_metadata is None:
                return
            metadata = session.remote_metadata
        else:
            metadata = session.request.metadata if session.request is not None else {}
        self.timers.clear(session.scoped_id)
        result.resolve(session.peer, metadata)
        logger.info(f"Session {session.short_id} connected as {session.role.value}")
        session.peer.release()

    def _expire(self, scoped_id: str, metadata: dict[str, Any]):
        session = self.registry.get(scoped_id)
        if session is None:
            return
        if session.result is not None:
            session.result.fail(ConnectionTimeout(metadata))
        self.teardown(scoped_id, SessionState.TIMED_OUT)

    def _start_timer(self, scoped_id: str):
        self.timers.start(scoped_id, lambda metadata: self._expire(scoped_id, metadata))

    # -- teardown ---------------------------------------------------------

    def teardown(self, scoped_id: str, state: SessionState = SessionState.CLOSED) -> Optional[Session]:
        """Clear the timer, drop the session and destroy its peer. Idempotent."""
        self.timers.clear(scoped_id)
        session = self.registry.remove(scoped_id)
        if session is None:
            return None
        session.state = state
        session.pending_signals = None
        peer = session.peer
        if peer is not None and not peer.destroyed:
            try:
                peer.destroy()
            except Exception as e:
                logger.warning(f"Destroying peer of session {session.short_id} failed: {e}")
        logger.debug(f"Session {session.short_id} torn down ({state.value})")
        return session

    def teardown_all(self):
        for session in self.registry.list_sessions():
            if session.result is not None:
                session.result.fail(PrematureClose())
            self.teardown(session.scoped_id, SessionState.CLOSED)
        self.timers.clear_all()
        self.registry.clear()
        self.cancel_posts()

    # -- initiator --------------------------------------------------------

    def connect(self, target: Identity, metadata: Any = None,
                peer_options: Optional[dict[str, Any]] = None) -> PendingResult:
        keys = self._require_keys()
        metadata = {} if metadata is None else metadata
        raw_id = new_session_id()
        scoped_id = scope_session_id(target.signature_key, raw_id)

        session = self.registry.create(scoped_id, raw_id, SessionRole.INITIATOR, SessionState.SIGNALING, target)
        session.local_metadata = metadata
        session.result = result = PendingResult(scoped_id)

        peer = self._create_peer(True, peer_options)
        self.registry.attach_peer(scoped_id, peer)
        first_offer = True

        def on_signal(signal):
            nonlocal first_offer
            has_sdp = isinstance(signal, dict) and bool(signal.get("sdp"))
            topic = TOPIC_OFFER if has_sdp and first_offer else TOPIC_SIGNAL
            if has_sdp:
                first_offer = False
            self._send(topic, {
                "pubKey": keys.identity.public_key,
                "signal": signal,
                "metadata": metadata,
                "sessionId": raw_id,
            }, target.public_key)

        peer.inner.on("signal", on_signal)
        self._watch(session, peer)
        self._start_timer(scoped_id)
        logger.info(f"Connecting to {target.public_key[:12]} (session {session.short_id})")
        return result

    # -- responder --------------------------------------------------------

    def _pending_session(self, request: ConnectionRequest) -> Session:
        if request.answered:
            raise InvalidStateError("Request was already answered", {"session": request.session.short_id})
        session = self.registry.get(request.session_id)
        if session is not request.session or session.state is not SessionState.PENDING_OFFER:
            raise InvalidStateError("Request is no longer pending", {"session": request.session.short_id})
        return session

    def accept(self, request: ConnectionRequest, metadata: Any,
               peer_options: Optional[dict[str, Any]] = None) -> PendingResult:
        session = self._pending_session(request)
        self._require_keys()
        request.answered = True
        initiator = request.initiator
        scoped_id = session.scoped_id

        session.local_metadata = metadata
        session.result = result = PendingResult(scoped_id)
        peer = self._create_peer(False, peer_options)

        def on_signal(signal):
            self._send(TOPIC_SIGNAL, {
                "signal": signal,
                "metadata": metadata,
                "sessionId": session.raw_id,
            }, initiator.public_key)

        peer.inner.on("signal", on_signal)
        self._watch(session, peer)
        session.state = SessionState.SIGNALING
        queued = self.registry.attach_peer(scoped_id, peer)
        for signal in queued:
            peer.signal(signal)
        self._start_timer(scoped_id)
        logger.info(f"Accepted request from {initiator.public_key[:12]} ({len(queued)} queued signal(s))")
        return result

    def reject(self, request: ConnectionRequest, metadata: Any):
        session = self._pending_session(request)
        self._require_keys()
        request.answered = True
        self.teardown(session.scoped_id, SessionState.REJECTED)
        self._send(TOPIC_REJECT, {"metadata": metadata, "sessionId": session.raw_id}, request.initiator.public_key)
        logger.info(f"Rejected request from {request.initiator.public_key[:12]}")

    # -- inbound ----------------------------------------------------------

    def on_discover(self, message: BusMessage, payload: dict[str, Any], scoped_id: Optional[str]):
        pub_key = payload.get("pubKey")
        if not pub_key:
            return
        self.events.emit("discover", Identity(pub_key, message.sig), payload.get("discoveryData"))

    def on_offer(self, message: BusMessage, payload: dict[str, Any], scoped_id: Optional[str]):
        pub_key = payload.get("pubKey")
        signal = payload.get("signal")
        if not pub_key or not signal or scoped_id is None:
            logger.debug("Ignoring incomplete offer")
            return
        if self.registry.is_finalized(scoped_id):
            logger.debug("Ignoring offer for a finished session")
            return
        session = self.registry.get(scoped_id)
        if session is not None and session.state is not SessionState.QUEUED:
            logger.info(f"Ignoring duplicate offer for session {session.short_id} ({session.state.value})")
            return

        initiator = Identity(pub_key, message.sig)
        if session is None:
            session = self.registry.create(
                scoped_id, payload["sessionId"], SessionRole.RESPONDER, SessionState.PENDING_OFFER, initiator
            )
        else:
            session.state = SessionState.PENDING_OFFER
            session.remote = initiator
        self.registry.enqueue_signal(scoped_id, signal)

        request = ConnectionRequest(self, session, payload.get("metadata", {}), initiator)
        session.request = request
        self._start_timer(scoped_id)
        self.events.emit("request", request)

    def on_signal(self, message: BusMessage, payload: dict[str, Any], scoped_id: Optional[str]):
        signal = payload.get("signal")
        if scoped_id is None or signal is None:
            return
        if self.registry.is_finalized(scoped_id):
            logger.debug("Ignoring signal for a finished session")
            return

        session = self.registry.get(scoped_id)
        if session is None:
            session = self.registry.create(
                scoped_id, payload["sessionId"], SessionRole.RESPONDER, SessionState.QUEUED
            )
            self._start_timer(scoped_id)

        if session.peer is None:
            self.registry.enqueue_signal(scoped_id, signal)
            return

        if (
            "metadata" in payload
            and session.role is SessionRole.INITIATOR
            and session.remote_metadata is None
        ):
            metadata = payload["metadata"]
            session.remote_metadata = {} if metadata is None else metadata
        session.peer.signal(signal)
        self._maybe_settle(session)

    def on_reject(self, message: BusMessage, payload: dict[str, Any], scoped_id: Optional[str]):
        if scoped_id is None:
            return
        session = self.registry.get(scoped_id)
        if session is None:
            return
        if session.result is not None:
            session.result.fail(Rejected(payload.get("metadata") or {}))
        logger.info(f"Session {session.short_id} rejected by remote party")
        self.teardown(scoped_id, SessionState.REJECTED)
