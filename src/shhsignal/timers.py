# src/shhsignal/timers.py
"""
Per-session connection timeouts.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .robustness import ERR_CONNECTION_TIMEOUT

logger = logging.getLogger(__name__)

TIMEOUT_DISABLED = -1


class TimerManager:
    """One pending timeout per scoped session id.

    ``timeout_ms`` of ``-1`` disables timeouts: ``start`` becomes a no-op and
    sessions wait indefinitely.
    """

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        self._timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def enabled(self) -> bool:
        return self.timeout_ms != TIMEOUT_DISABLED

    def start(self, session_id: str, on_timeout: Callable[[dict[str, Any]], None]) -> bool:
        """Arm the timer for ``session_id``, replacing any existing one."""
        self.clear(session_id)
        if not self.enabled:
            return False
        loop = asyncio.get_running_loop()
        self._timers[session_id] = loop.call_later(
            self.timeout_ms / 1000.0, self._fire, session_id, on_timeout
        )
        return True

    def _fire(self, session_id: str, on_timeout: Callable[[dict[str, Any]], None]):
        self._timers.pop(session_id, None)
        logger.info(f"Session {session_id[-12:]} timed out after {self.timeout_ms}ms")
        on_timeout({"code": ERR_CONNECTION_TIMEOUT})

    def clear(self, session_id: str) -> bool:
        handle = self._timers.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def clear_all(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def has(self, session_id: str) -> bool:
        return session_id in self._timers

    def __contains__(self, session_id: str) -> bool:
        return self.has(session_id)

    def __len__(self) -> int:
        return len(self._timers)
