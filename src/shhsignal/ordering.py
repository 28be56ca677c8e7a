# src/shhsignal/ordering.py
"""
Connect-event ordering for peer connections.

An underlying peer connection may emit ``stream``/``track`` before (or in the
same turn as) ``connect``. Applications only ever see ``OrderedPeerConnection``,
which guarantees ``connect`` first: stream/track events are buffered until the
handshake layer releases the wrapper, then ``connect`` is re-emitted one loop
turn later and the buffer is replayed on the turn after that.

``connect`` is sticky. A listener registered after it was emitted is still
called, on the next loop turn. Stream/track listeners registered after the
replay receive the earlier stream/track events in the same catch-up turn,
after any late ``connect`` listeners, so an application that awaits the
connect result through extra tasks still observes connect first.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Optional

from .events import EventEmitter
from .peer import PeerConnection

logger = logging.getLogger(__name__)

APP_EVENTS = ("connect", "close", "stream", "track", "data", "error")
BUFFERED_EVENTS = ("stream", "track")


class OrderedPeerConnection:
    """Application-facing wrapper around a ``PeerConnection``."""

    def __init__(self, inner: PeerConnection):
        self.inner = inner
        self.events = EventEmitter(APP_EVENTS)
        self._loop = asyncio.get_running_loop()
        self._buffer: list[tuple[str, tuple[Any, ...]]] = []
        self._history: list[tuple[str, tuple[Any, ...]]] = []
        self._connect_callbacks: list[Callable[["OrderedPeerConnection"], None]] = []
        self._late: list[tuple[str, Callable, int]] = []
        self._late_handle: Optional[asyncio.Handle] = None
        self._inner_connected = False
        self._released = False
        self._connect_emitted = False
        self._replayed = False
        self._closed = False

        self._capture = {name: self._capturer(name) for name in BUFFERED_EVENTS}
        for name, handler in self._capture.items():
            inner.on(name, handler)
        inner.once("connect", self._on_inner_connect)
        inner.on("close", self._on_inner_close)
        inner.on("data", self._forwarder("data"))
        inner.on("error", self._forwarder("error"))

    def _capturer(self, name: str) -> Callable:
        def capture(*args):
            self._buffer.append((name, args))
        return capture

    def _forwarder(self, name: str) -> Callable:
        def forward(*args):
            self.events.emit(name, *args)
        return forward

    def _recorder(self, name: str) -> Callable:
        def record(*args):
            self._history.append((name, args))
            self.events.emit(name, *args)
        return record

    def _on_inner_connect(self):
        self._inner_connected = True
        for callback in list(self._connect_callbacks):
            callback(self)
        self._connect_callbacks.clear()

    def _on_inner_close(self):
        self._closed = True
        self.events.emit("close")

    def when_connected(self, callback: Callable[["OrderedPeerConnection"], None]):
        """Run ``callback`` when the underlying connection reports connect."""
        if self._inner_connected:
            callback(self)
        else:
            self._connect_callbacks.append(callback)

    def release(self):
        """Start the two deferred phases: synthetic connect, then replay."""
        if self._released:
            return
        self._released = True
        self._loop.call_soon(self._emit_connect)

    def _emit_connect(self):
        if self._closed:
            logger.debug("Peer closed before connect could be surfaced")
            return
        self._connect_emitted = True
        self.events.emit("connect")
        self._loop.call_soon(self._replay)

    def _replay(self):
        if self._late_handle is not None:
            # Late connect listeners go first
            self._loop.call_soon(self._replay)
            return
        buffered, self._buffer = self._buffer, []
        self._replayed = True
        for name, args in buffered:
            self._history.append((name, args))
            self.events.emit(name, *args)
        for name, handler in self._capture.items():
            self.inner.off(name, handler)
            self.inner.on(name, self._recorder(name))
        logger.debug(f"Replayed {len(buffered)} buffered stream/track event(s)")

    def _track_late(self, name: str, listener: Callable):
        if not self._connect_emitted or self._closed:
            return
        if name in BUFFERED_EVENTS and not self._replayed:
            return  # the pending replay reaches it
        if name != "connect" and name not in BUFFERED_EVENTS:
            return
        # Events recorded after this point reach the listener live
        self._late.append((name, listener, len(self._history)))
        if self._late_handle is None:
            self._late_handle = self._loop.call_soon(self._flush_late)

    def _flush_late(self):
        self._late_handle = None
        late, self._late = self._late, []
        if self._closed:
            return
        for name, listener, _ in late:
            if name == "connect":
                self.events.deliver("connect", listener)
        for name, listener, seen in late:
            if name == "connect":
                continue
            for event_name, args in self._history[:seen]:
                if event_name == name and not self.events.deliver(name, listener, *args):
                    break

    @property
    def connected(self) -> bool:
        return self._inner_connected and not self._closed

    @property
    def destroyed(self) -> bool:
        return self.inner.destroyed

    def on(self, name: str, callback: Callable) -> Callable:
        listener = self.events.on(name, callback)
        self._track_late(name, listener)
        return listener

    def once(self, name: str, callback: Callable) -> Callable:
        listener = self.events.once(name, callback)
        self._track_late(name, listener)
        return listener

    def off(self, name: str, callback: Callable) -> bool:
        return self.events.off(name, callback)

    def signal(self, payload: dict[str, Any]):
        self.inner.signal(payload)

    def destroy(self):
        self.inner.destroy()

    def __getattr__(self, name: str):
        # Only reached for attributes not defined on the wrapper
        if name == "inner":
            raise AttributeError(name)
        return getattr(self.inner, name)

    def __repr__(self):
        return f"<OrderedPeerConnection inner={self.inner!r} released={self._released}>"
