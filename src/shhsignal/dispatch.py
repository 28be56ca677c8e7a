# src/shhsignal/dispatch.py
"""
Inbound message filtering.

Every bus subscription handler is wrapped in a ``MessageFilter``. Only signed,
foreign, well-formed messages reach the topic handlers, and session ids are
scoped to the signer before anything else looks at them. The order of the
checks matters: no payload field is trusted before the signature check.
"""

import logging
from collections.abc import Callable
from typing import Any, Optional

from . import codec
from .bus import TOPIC_NAMES, BusMessage
from .robustness import log_with_context

logger = logging.getLogger(__name__)

SCOPE_SEPARATOR = ":"

TopicHandler = Callable[[BusMessage, dict[str, Any], Optional[str]], None]


def scope_session_id(signer: str, raw_session_id: str) -> str:
    """Bind a raw session token to the identity that signed it."""
    return f"{signer}{SCOPE_SEPARATOR}{raw_session_id}"


class MessageFilter:
    """Bus handler that forwards authenticated messages to ``handler``.

    ``local_signature`` returns the local signing identity, or None once the
    client has been destroyed, in which case everything is dropped.
    """

    def __init__(self, local_signature: Callable[[], Optional[str]], handler: TopicHandler, topic: str = ""):
        self.local_signature = local_signature
        self.handler = handler
        self.topic = TOPIC_NAMES.get(topic, topic)
        self.dropped = 0
        self.forwarded = 0

    def __call__(self, error: Optional[Exception], message: Optional[BusMessage]):
        if error is not None:
            log_with_context(f"Bus delivery error on {self.topic}: {error}", "error", {"topic": self.topic})
            self.dropped += 1
            return
        if message is None:
            self.dropped += 1
            return

        local = self.local_signature()
        if local is None:
            self.dropped += 1
            return
        if not message.sig:
            logger.debug(f"Ignoring unsigned {self.topic} message")
            self.dropped += 1
            return
        if message.sig == local:
            self.dropped += 1
            return

        payload = codec.decode(message.payload)
        if payload is None:
            self.dropped += 1
            return

        raw_session_id = payload.get("sessionId")
        scoped_session_id = None
        if isinstance(raw_session_id, str) and raw_session_id:
            scoped_session_id = scope_session_id(message.sig, raw_session_id)

        self.forwarded += 1
        self.handler(message, payload, scoped_session_id)
