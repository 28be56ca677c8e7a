"""
Error taxonomy and logging helpers for shhsignal.

Handshake failures surface to the application through the failure path of a
pending result; everything below that (decode failures, unauthenticated or
looped-back messages) is absorbed and logged by the message filter.
"""

import json
import logging
import logging.handlers
from collections.abc import Callable
from enum import Enum
from functools import wraps
from typing import Any

ERR_CONNECTION_TIMEOUT = "ERR_CONNECTION_TIMEOUT"
ERR_PREMATURE_CLOSE = "ERR_PREMATURE_CLOSE"

logger = logging.getLogger("shhsignal")


class ContextFormatter(logging.Formatter):
    """Formatter that serializes the optional ``context`` extra as JSON."""

    def format(self, record):
        # The record is shared by every handler; restore the original afterwards
        had_context = hasattr(record, "context")
        context = getattr(record, "context", None)
        record.context = json.dumps(context if isinstance(context, dict) else {}, default=str)
        try:
            return super().format(record)
        finally:
            if had_context:
                record.context = context
            else:
                del record.context


def setup_logging(log_level: str = "INFO", log_file: str | None = None):
    """
    Set up structured logging for the ``shhsignal`` logger tree.

    Handlers installed by a previous call are replaced, so calling this twice
    does not duplicate output.
    """
    root = logging.getLogger("shhsignal")
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = ContextFormatter(
        json.dumps(
            {
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "component": "%(name)s",
                "message": "%(message)s",
                "context": "%(context)s",
            }
        )
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root


def log_with_context(message: str, level: str = "info", context: dict[str, Any] = None):
    """
    Log with additional structured context.
    """
    extra = {"context": context or {}}
    getattr(logger, level)(message, extra=extra)


class ErrorType(Enum):
    BUS = "bus"
    CODEC = "codec"
    HANDSHAKE = "handshake"
    CONFIG = "config"
    GENERAL = "general"


class SignalError(Exception):
    def __init__(self, message: str, error_type: ErrorType = ErrorType.GENERAL, context: dict[str, Any] = None):
        super().__init__(message)
        self.error_type = error_type
        self.context = context or {}


class NotReadyError(SignalError):
    """Raised when an operation needs the identity before bootstrap finished."""

    def __init__(self, message: str = "Client has not completed bootstrap"):
        super().__init__(message, ErrorType.HANDSHAKE)


class InvalidStateError(SignalError):
    """Raised when a request is answered twice or after its session is gone."""

    def __init__(self, message: str, context: dict[str, Any] = None):
        super().__init__(message, ErrorType.HANDSHAKE, context)


class HandshakeError(SignalError):
    """Failure outcome of a pending connect/accept result.

    ``metadata`` is what the application sees: for timeouts and premature
    closes it holds at least a ``code``; for rejections it is the metadata the
    remote party supplied.
    """

    def __init__(self, metadata: dict[str, Any] | None = None, message: str | None = None):
        self.metadata = dict(metadata or {})
        self.code = self.metadata.get("code")
        super().__init__(message or f"Handshake failed: {self.metadata}", ErrorType.HANDSHAKE)


class ConnectionTimeout(HandshakeError):
    def __init__(self, metadata: dict[str, Any] | None = None):
        super().__init__(metadata or {"code": ERR_CONNECTION_TIMEOUT}, "Connection timed out")


class PrematureClose(HandshakeError):
    def __init__(self, metadata: dict[str, Any] | None = None):
        super().__init__(metadata or {"code": ERR_PREMATURE_CLOSE}, "Connection closed before handshake completed")


class Rejected(HandshakeError):
    def __init__(self, metadata: dict[str, Any] | None = None):
        super().__init__(metadata, "Connection rejected by remote party")


def handle_exception(error_type: ErrorType = ErrorType.GENERAL, context: dict[str, Any] = None):
    """
    Decorator that re-raises unexpected exceptions as ``SignalError``.
    """

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except SignalError as e:
                logger.error(f"Signal error: {e}", extra={"context": {**e.context, **(context or {})}})
                raise
            except Exception as e:
                logger.error(f"Unhandled error in {func.__name__}: {e}", extra={"context": context or {}})
                raise SignalError(str(e), error_type, context) from e

        return wrapper

    return decorator
