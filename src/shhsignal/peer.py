# src/shhsignal/peer.py
"""
Peer connection capability.

The handshake layer never negotiates ICE/SDP itself. It drives an object with
``signal(payload)`` and ``destroy()`` and listens to its ``signal``,
``connect``, ``close``, ``stream`` and ``track`` events.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable, Iterable
from typing import Any

from .events import EventEmitter

logger = logging.getLogger(__name__)

PEER_EVENTS = ("signal", "connect", "close", "stream", "track", "data", "error")


class PeerConnection:
    """Base class for peer connection implementations."""

    def __init__(self, initiator: bool = False, **options):
        self.initiator = initiator
        self.options = options
        self.events = EventEmitter(PEER_EVENTS)
        self.connected = False
        self.destroyed = False

    def on(self, name: str, callback: Callable) -> Callable:
        return self.events.on(name, callback)

    def once(self, name: str, callback: Callable) -> Callable:
        return self.events.once(name, callback)

    def off(self, name: str, callback: Callable) -> bool:
        return self.events.off(name, callback)

    def emit(self, name: str, *args) -> int:
        return self.events.emit(name, *args)

    def signal(self, payload: dict[str, Any]):
        raise NotImplementedError

    def destroy(self):
        raise NotImplementedError


PeerFactory = Callable[..., PeerConnection]


class LoopbackPeerConnection(PeerConnection):
    """In-process peer connection producing offer/answer/candidate payloads.

    The initiator emits an offer (and ``candidates`` trickle candidates) on
    the next loop turn. A responder answers the first offer it is given. Each
    side emits ``connect`` once it has both sent and received a description.

    ``streams`` and ``tracks`` are emitted immediately *before* ``connect``,
    as some platforms do when negotiation completes.
    """

    def __init__(self, initiator: bool = False, candidates: int = 1,
                 streams: Iterable[Any] = (), tracks: Iterable[tuple[Any, Any]] = (), **options):
        super().__init__(initiator=initiator, **options)
        self.peer_id = secrets.token_hex(4)
        self.candidates = candidates
        self.streams = list(streams)
        self.tracks = list(tracks)
        self.received_signals: list[dict[str, Any]] = []
        self.remote_description: dict[str, Any] | None = None
        self.local_description: dict[str, Any] | None = None
        self.remote_candidates: list[Any] = []
        self._loop = asyncio.get_running_loop()
        if initiator:
            self._loop.call_soon(self._create_offer)

    def _describe(self, kind: str) -> dict[str, Any]:
        return {"type": kind, "sdp": f"v=0\r\no=- {self.peer_id} 2 IN IP4 127.0.0.1\r\ns=-\r\n"}

    def _send_description(self, kind: str):
        if self.destroyed:
            return
        self.local_description = self._describe(kind)
        self.emit("signal", self.local_description)
        for index in range(self.candidates):
            self.emit("signal", {
                "type": "candidate",
                "candidate": {
                    "candidate": f"candidate:{index} 1 udp 2122260223 127.0.0.1 {50000 + index} typ host",
                    "sdpMLineIndex": 0,
                    "sdpMid": "0",
                },
            })
        self._maybe_connect()

    def _create_offer(self):
        self._send_description("offer")

    def signal(self, payload: dict[str, Any]):
        if self.destroyed:
            logger.warning(f"Peer {self.peer_id}: ignoring signal after destroy")
            return
        self.received_signals.append(payload)
        if "candidate" in payload:
            self.remote_candidates.append(payload["candidate"])
            return
        if "sdp" not in payload:
            logger.debug(f"Peer {self.peer_id}: ignoring signal without sdp or candidate")
            return

        kind = payload.get("type")
        if kind == "offer" and not self.initiator:
            first = self.remote_description is None
            self.remote_description = payload
            if first:
                self._loop.call_soon(self._send_description, "answer")
        elif kind == "answer" and self.initiator:
            self.remote_description = payload
            self._loop.call_soon(self._maybe_connect)
        else:
            logger.debug(f"Peer {self.peer_id}: unexpected {kind} description")

    def _maybe_connect(self):
        if self.destroyed or self.connected:
            return
        if self.local_description is None or self.remote_description is None:
            return
        self.connected = True
        for stream in self.streams:
            self.emit("stream", stream)
        for track, stream in self.tracks:
            self.emit("track", track, stream)
        self.emit("connect")

    def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self.connected = False
        self._loop.call_soon(self.emit, "close")
