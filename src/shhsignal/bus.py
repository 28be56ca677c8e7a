# src/shhsignal/bus.py
"""
Message bus capability for shhsignal.

The handshake layer talks to a store-and-forward, topic-addressed bus through
``MessageBus``. The bus owns keys, signing, encryption, proof of work and
delivery; it guarantees neither ordering nor exactly-once delivery.

``MemoryBus`` is an in-process implementation used by the tests and the CLI
demo. It signs with real ECDSA keys and derives room keys from passwords, but
it does not encrypt payloads and does not compute proof of work.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .robustness import ErrorType, SignalError

logger = logging.getLogger(__name__)

TOPIC_DISCOVER = "0x87139212"
TOPIC_OFFER = "0x09124928"
TOPIC_SIGNAL = "0x92489214"
TOPIC_REJECT = "0x89214711"

TOPIC_NAMES = {
    TOPIC_DISCOVER: "discover",
    TOPIC_OFFER: "offer",
    TOPIC_SIGNAL: "signal",
    TOPIC_REJECT: "reject",
}

# Outbound post parameters, identical for every message
TTL = 5
POW_TARGET = 2.01
POW_TIME = 20

ROOM_KEY_ITERATIONS = 65356
ROOM_KEY_SALT = b"shhsignal-room"


@dataclass(frozen=True)
class SubscriptionFilter:
    """Which messages a subscription receives.

    Exactly one of ``sym_key_id`` (room-wide broadcast) or ``private_key_id``
    (messages addressed to that key pair's public key) is set.
    """

    topics: tuple[str, ...]
    sym_key_id: Optional[str] = None
    private_key_id: Optional[str] = None


@dataclass
class Envelope:
    """Outbound post request."""

    topic: str
    payload: str
    sig: Optional[str] = None  # signing key id; None posts unsigned
    pub_key: Optional[str] = None  # recipient public key
    sym_key_id: Optional[str] = None
    ttl: int = TTL
    pow_target: float = POW_TARGET
    pow_time: int = POW_TIME


@dataclass
class BusMessage:
    """Inbound message as delivered to a subscription handler.

    ``sig`` is the signer's public key when the message carried a valid
    signature, None otherwise.
    """

    topic: str
    payload: str
    sig: Optional[str] = None
    recipient_public_key: Optional[str] = None
    ttl: int = TTL
    timestamp: float = field(default_factory=time.time)
    hash: str = ""
    signature: Optional[bytes] = None


MessageHandler = Callable[[Optional[Exception], Optional[BusMessage]], None]


class MessageBus:
    """Abstract bus capability consumed by ``SignalClient``."""

    async def new_key_pair(self) -> str:
        raise NotImplementedError

    async def generate_sym_key_from_password(self, password: str) -> str:
        raise NotImplementedError

    async def get_public_key(self, key_id: str) -> str:
        raise NotImplementedError

    def subscribe(self, subscription_filter: SubscriptionFilter, handler: MessageHandler) -> str:
        raise NotImplementedError

    def unsubscribe(self, subscription_id: str) -> bool:
        raise NotImplementedError

    async def post(self, envelope: Envelope) -> str:
        raise NotImplementedError


@dataclass
class _Subscription:
    subscription_id: str
    filter: SubscriptionFilter
    handler: MessageHandler


def _public_hex(private_key: ec.EllipticCurvePrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return "0x" + raw.hex()


def _signed_bytes(topic: str, payload: str, recipient: Optional[str]) -> bytes:
    return f"{topic}|{recipient or ''}|{payload}".encode()


class MemoryBus(MessageBus):
    """In-process bus with asynchronous delivery.

    Every delivery is scheduled on the running loop, never invoked inline, so
    handlers observe the same re-entrancy as with a networked bus.
    ``duplicates`` delivers each message that many extra times.
    """

    def __init__(self, delivery_delay: float = 0.0, duplicates: int = 0,
                 room_key_iterations: int = ROOM_KEY_ITERATIONS):
        self.delivery_delay = delivery_delay
        self.duplicates = duplicates
        self.room_key_iterations = room_key_iterations
        self._key_pairs: dict[str, ec.EllipticCurvePrivateKey] = {}
        self._sym_keys: dict[str, bytes] = {}
        self._subscriptions: dict[str, _Subscription] = {}
        self.posted: list[BusMessage] = []

    async def new_key_pair(self) -> str:
        key_id = secrets.token_hex(32)
        self._key_pairs[key_id] = ec.generate_private_key(ec.SECP256K1())
        return key_id

    async def generate_sym_key_from_password(self, password: str) -> str:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=ROOM_KEY_SALT,
            iterations=self.room_key_iterations,
        )
        key_id = secrets.token_hex(32)
        self._sym_keys[key_id] = kdf.derive(password.encode("utf-8"))
        return key_id

    async def get_public_key(self, key_id: str) -> str:
        private_key = self._key_pairs.get(key_id)
        if private_key is None:
            raise SignalError(f"Unknown key pair {key_id[:8]}", ErrorType.BUS)
        return _public_hex(private_key)

    def subscribe(self, subscription_filter: SubscriptionFilter, handler: MessageHandler) -> str:
        if (subscription_filter.sym_key_id is None) == (subscription_filter.private_key_id is None):
            raise SignalError("Subscription needs exactly one of sym_key_id or private_key_id", ErrorType.BUS)
        subscription_id = secrets.token_hex(8)
        self._subscriptions[subscription_id] = _Subscription(subscription_id, subscription_filter, handler)
        logger.debug(f"Subscription {subscription_id} on {list(subscription_filter.topics)}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def post(self, envelope: Envelope) -> str:
        if (envelope.sym_key_id is None) == (envelope.pub_key is None):
            raise SignalError("Envelope needs exactly one of sym_key_id or pub_key", ErrorType.BUS)
        if envelope.sym_key_id is not None and envelope.sym_key_id not in self._sym_keys:
            raise SignalError(f"Unknown symmetric key {envelope.sym_key_id[:8]}", ErrorType.BUS)

        message = BusMessage(
            topic=envelope.topic,
            payload=envelope.payload,
            recipient_public_key=envelope.pub_key,
            ttl=envelope.ttl,
        )
        if envelope.sig is not None:
            private_key = self._key_pairs.get(envelope.sig)
            if private_key is None:
                raise SignalError(f"Unknown signing key {envelope.sig[:8]}", ErrorType.BUS)
            message.signature = private_key.sign(
                _signed_bytes(message.topic, message.payload, message.recipient_public_key),
                ec.ECDSA(hashes.SHA256()),
            )
            message.sig = _public_hex(private_key)
        message.hash = "0x" + hashlib.sha256(
            _signed_bytes(message.topic, message.payload, message.recipient_public_key)
            + (message.signature or b"")
        ).hexdigest()

        self.posted.append(message)
        self._dispatch(message, self._sym_keys.get(envelope.sym_key_id) if envelope.sym_key_id else None)
        return message.hash

    def inject(self, message: BusMessage, sym_key_id: Optional[str] = None) -> int:
        """Deliver a pre-built message as if it came off the wire.

        The signature is checked exactly as for posted messages, so a forged
        ``sig`` without a matching ``signature`` arrives unsigned.
        """
        return self._dispatch(message, self._sym_keys.get(sym_key_id) if sym_key_id else None)

    def report_error(self, topic: str, error: Exception) -> int:
        """Deliver a transport error to every subscription on ``topic``."""
        count = 0
        for subscription in list(self._subscriptions.values()):
            if topic in subscription.filter.topics:
                self._schedule(subscription.handler, error, None)
                count += 1
        return count

    def _verify(self, message: BusMessage) -> Optional[str]:
        if not message.sig or message.signature is None:
            return None
        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256K1(), bytes.fromhex(message.sig[2:])
            )
            public_key.verify(
                message.signature,
                _signed_bytes(message.topic, message.payload, message.recipient_public_key),
                ec.ECDSA(hashes.SHA256()),
            )
        except (InvalidSignature, ValueError):
            logger.debug(f"Signature check failed for message {message.hash[:10]}")
            return None
        return message.sig

    def _matches(self, subscription: _Subscription, message: BusMessage, sym_key: Optional[bytes]) -> bool:
        sub_filter = subscription.filter
        if message.topic not in sub_filter.topics:
            return False
        if sub_filter.sym_key_id is not None:
            own = self._sym_keys.get(sub_filter.sym_key_id)
            return sym_key is not None and own is not None and hmac.compare_digest(own, sym_key)
        private_key = self._key_pairs.get(sub_filter.private_key_id)
        return (
            message.recipient_public_key is not None
            and private_key is not None
            and _public_hex(private_key) == message.recipient_public_key
        )

    def _dispatch(self, message: BusMessage, sym_key: Optional[bytes]) -> int:
        delivered = BusMessage(
            topic=message.topic,
            payload=message.payload,
            sig=self._verify(message),
            recipient_public_key=message.recipient_public_key,
            ttl=message.ttl,
            timestamp=message.timestamp,
            hash=message.hash,
            signature=message.signature,
        )
        count = 0
        for subscription in list(self._subscriptions.values()):
            if self._matches(subscription, delivered, sym_key):
                for _ in range(1 + self.duplicates):
                    self._schedule(subscription.handler, None, delivered)
                count += 1
        logger.debug(f"Message {delivered.hash[:10]} on topic {delivered.topic} delivered to {count} subscription(s)")
        return count

    def _schedule(self, handler: MessageHandler, error: Optional[Exception], message: Optional[BusMessage]):
        loop = asyncio.get_running_loop()
        if self.delivery_delay > 0:
            loop.call_later(self.delivery_delay, handler, error, message)
        else:
            loop.call_soon(handler, error, message)
