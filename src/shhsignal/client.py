# src/shhsignal/client.py
"""
Client facade for shhsignal.

``SignalClient`` bootstraps an identity on a ``MessageBus``, subscribes to the
four signaling topics and exposes discovery, connection and request events to
the application::

    async with SignalClient(bus, room_password="lobby") as client:
        client.on("request", lambda request: request.accept({"name": "bob"}))
        await client.discover({"name": "alice"})
"""

import asyncio
import logging
from typing import Any, Optional

from . import codec
from .bus import (
    TOPIC_DISCOVER,
    TOPIC_OFFER,
    TOPIC_REJECT,
    TOPIC_SIGNAL,
    Envelope,
    MessageBus,
    SubscriptionFilter,
)
from .config import SignalConfig, resolve_settings
from .dispatch import MessageFilter
from .events import EventEmitter
from .handshake import Handshake, Identity, LocalKeys, PendingResult
from .ordering import OrderedPeerConnection
from .peer import LoopbackPeerConnection, PeerFactory
from .robustness import InvalidStateError, NotReadyError
from .session import SessionRegistry
from .timers import TimerManager

logger = logging.getLogger(__name__)

CLIENT_EVENTS = ("ready", "discover", "request")


class SignalClient:
    """One participant on the bus.

    ``config`` may be a ``SignalConfig``, a ``Config`` or a mapping; keyword
    ``options`` override it and accept both snake_case and camelCase names.
    ``peer_factory`` builds the underlying peer connections and defaults to
    ``LoopbackPeerConnection``.
    """

    def __init__(self, bus: MessageBus, config: Any = None, *,
                 peer_factory: Optional[PeerFactory] = None, **options):
        self.bus = bus
        self.config: SignalConfig = resolve_settings(config, **options)
        self.events = EventEmitter(CLIENT_EVENTS)
        self.registry = SessionRegistry(self.config.stale_session_ttl, self.config.max_finalized_sessions)
        self.timers = TimerManager(self.config.connection_timeout)
        self.handshake = Handshake(
            bus, self.registry, self.timers, self.events, peer_factory or LoopbackPeerConnection
        )
        self._subscriptions: list[str] = []
        self._ready = asyncio.Event()
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._destroyed = False

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> "SignalClient":
        """Generate keys and subscribe. Safe to call more than once."""
        if self._destroyed:
            raise InvalidStateError("Client has been destroyed")
        if self._bootstrap_task is None:
            self._bootstrap_task = asyncio.ensure_future(self._bootstrap())
        await self._bootstrap_task
        return self

    async def _bootstrap(self):
        bus = self.bus
        room_key_id = await bus.generate_sym_key_from_password(self.config.room_password)
        sig_key_id = await bus.new_key_pair()
        key_pair_id = await bus.new_key_pair()
        signature_key = await bus.get_public_key(sig_key_id)
        public_key = await bus.get_public_key(key_pair_id)
        if self._destroyed:
            logger.debug("Client destroyed during bootstrap")
            return

        self.handshake.keys = LocalKeys(
            identity=Identity(public_key, signature_key),
            sig_key_id=sig_key_id,
            key_pair_id=key_pair_id,
            room_key_id=room_key_id,
        )
        self._subscribe(SubscriptionFilter((TOPIC_DISCOVER,), sym_key_id=room_key_id), self.handshake.on_discover)
        self._subscribe(SubscriptionFilter((TOPIC_OFFER,), private_key_id=key_pair_id), self.handshake.on_offer)
        self._subscribe(SubscriptionFilter((TOPIC_SIGNAL,), private_key_id=key_pair_id), self.handshake.on_signal)
        self._subscribe(SubscriptionFilter((TOPIC_REJECT,), private_key_id=key_pair_id), self.handshake.on_reject)

        self._ready.set()
        logger.info(f"Client ready as {public_key[:12]}")
        self.events.emit("ready")

    def _subscribe(self, subscription_filter: SubscriptionFilter, handler):
        topic = subscription_filter.topics[0]
        message_filter = MessageFilter(self._local_signature, handler, topic)
        self._subscriptions.append(self.bus.subscribe(subscription_filter, message_filter))

    def _local_signature(self) -> Optional[str]:
        keys = self.handshake.keys
        return keys.identity.signature_key if keys is not None else None

    @property
    def ready(self) -> bool:
        return self._ready.is_set() and not self._destroyed

    @property
    def identity(self) -> Optional[Identity]:
        keys = self.handshake.keys
        return keys.identity if keys is not None else None

    @property
    def id(self) -> Optional[Identity]:
        return self.identity

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self):
        """Tear down every session, unsubscribe and forget the identity."""
        if self._destroyed:
            return
        self._destroyed = True
        self.handshake.teardown_all()
        for subscription_id in self._subscriptions:
            self.bus.unsubscribe(subscription_id)
        self._subscriptions.clear()
        self.handshake.keys = None
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
        logger.info("Client destroyed")

    async def close(self):
        self.destroy()
        if self._bootstrap_task is not None:
            await asyncio.gather(self._bootstrap_task, return_exceptions=True)

    async def __aenter__(self) -> "SignalClient":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # -- events -----------------------------------------------------------

    def on(self, name: str, callback):
        return self.events.on(name, callback)

    def once(self, name: str, callback):
        return self.events.once(name, callback)

    def off(self, name: str, callback) -> bool:
        return self.events.off(name, callback)

    # -- operations -------------------------------------------------------

    async def discover(self, discovery_data: Any = None) -> str:
        """Announce this client to the room. Waits for bootstrap if needed."""
        if self._destroyed:
            raise InvalidStateError("Client has been destroyed")
        if not self._ready.is_set():
            await self.start()
        keys = self.handshake.keys
        if keys is None:
            raise NotReadyError()
        payload = codec.encode({"pubKey": keys.identity.public_key, "discoveryData": discovery_data})
        envelope = Envelope(topic=TOPIC_DISCOVER, payload=payload, sig=keys.sig_key_id, sym_key_id=keys.room_key_id)
        return await self.bus.post(envelope)

    def connect(self, target: Identity, metadata: Any = None,
                peer_options: Optional[dict[str, Any]] = None) -> PendingResult:
        """Start a handshake with ``target``; await the result for the peer."""
        return self.handshake.connect(target, metadata, peer_options)

    def peers(self) -> list[OrderedPeerConnection]:
        return self.registry.peers()

    async def flush(self):
        """Wait until all outbound signaling posts have been handed to the bus."""
        await self.handshake.flush()

    def __repr__(self):
        identity = self.identity
        name = identity.public_key[:12] if identity else "-"
        return f"<SignalClient {name} sessions={len(self.registry)}>"
