# src/shhsignal/codec.py
"""
Envelope codec for shhsignal.

Payloads travel over the bus as ``0x``-prefixed hex of compact UTF-8 JSON,
optionally right-padded with zero bytes to a minimum length. Zero bytes are
dropped on decode, which is safe because JSON text never contains NUL.
"""

import binascii
import json
import logging
from typing import Any

from .robustness import ErrorType, handle_exception, log_with_context

logger = logging.getLogger(__name__)

HEX_PREFIX = "0x"


def to_hex(data: bytes, min_length: int = 0) -> str:
    """Hex-encode ``data`` padded with zero bytes to ``min_length`` bytes."""
    if len(data) < min_length:
        data = data + b"\x00" * (min_length - len(data))
    return HEX_PREFIX + data.hex()


def from_hex(wire: str | bytes) -> bytes:
    """Inverse of ``to_hex`` with padding removed. Raises ``ValueError``."""
    if isinstance(wire, bytes):
        wire = wire.decode("ascii")
    if wire[:2].lower() == HEX_PREFIX:
        wire = wire[2:]
    try:
        raw = bytes.fromhex(wire)
    except ValueError as e:
        raise ValueError(f"invalid hex payload: {e}") from e
    return raw.replace(b"\x00", b"")


@handle_exception(ErrorType.CODEC)
def encode(obj: Any, min_length: int = 0) -> str:
    """Serialize ``obj`` to the bus wire format."""
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return to_hex(text.encode("utf-8"), min_length)


def decode(wire: str | bytes | None) -> dict[str, Any] | None:
    """Parse a wire payload into a dict, or return None if it is malformed."""
    if not wire:
        return None
    if not isinstance(wire, (str, bytes)):
        log_with_context("Dropping non-text payload", "warning", {"type": type(wire).__name__})
        return None
    try:
        text = from_hex(wire).decode("utf-8")
        obj = json.loads(text)
    except (ValueError, UnicodeError, binascii.Error) as e:
        log_with_context("Dropping malformed payload", "warning", {"error": str(e)})
        return None
    if not isinstance(obj, dict):
        log_with_context("Dropping non-object payload", "warning", {"type": type(obj).__name__})
        return None
    return obj
