"""shhsignal package namespace.

Serverless signaling for peer-to-peer connections over a topic-addressed
message bus: discovery, offer/accept/reject and signal exchange.
"""

from .__about__ import __version__
from . import bus
from . import codec
from . import config
from . import handshake
from . import ordering
from . import peer
from . import robustness
from . import session
from .bus import MemoryBus, MessageBus
from .client import SignalClient
from .config import Config, SignalConfig
from .handshake import ConnectionRequest, ConnectResult, Identity, PendingResult
from .ordering import OrderedPeerConnection
from .peer import LoopbackPeerConnection, PeerConnection
from .robustness import (
    ConnectionTimeout,
    HandshakeError,
    InvalidStateError,
    NotReadyError,
    PrematureClose,
    Rejected,
    SignalError,
)

__all__ = [
    "__version__",
    "bus",
    "codec",
    "config",
    "handshake",
    "ordering",
    "peer",
    "robustness",
    "session",
    "SignalClient",
    "MessageBus",
    "MemoryBus",
    "Config",
    "SignalConfig",
    "Identity",
    "ConnectionRequest",
    "ConnectResult",
    "PendingResult",
    "PeerConnection",
    "LoopbackPeerConnection",
    "OrderedPeerConnection",
    "SignalError",
    "HandshakeError",
    "ConnectionTimeout",
    "PrematureClose",
    "Rejected",
    "NotReadyError",
    "InvalidStateError",
]
