# src/shhsignal/events.py
"""
Event publishing for shhsignal components.

Components own an ``EventEmitter`` with a fixed set of event names instead of
inheriting from a generic emitter base.
"""

import logging
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)


class EventEmitter:
    """Named-event callback registry with a closed set of event names."""

    def __init__(self, names: Iterable[str]):
        self.names = frozenset(names)
        self.listeners: dict[str, list[Callable]] = {name: [] for name in self.names}

    def _check(self, name: str):
        if name not in self.names:
            raise ValueError(f"Unknown event {name!r}; expected one of {sorted(self.names)}")

    def on(self, name: str, callback: Callable) -> Callable:
        """Register a listener; returns it so it can be removed later."""
        self._check(name)
        self.listeners[name].append(callback)
        return callback

    def once(self, name: str, callback: Callable) -> Callable:
        """Register a listener that is removed before its first invocation."""
        self._check(name)

        def wrapper(*args):
            self.off(name, wrapper)
            callback(*args)

        wrapper.__wrapped__ = callback
        self.listeners[name].append(wrapper)
        return wrapper

    def off(self, name: str, callback: Callable) -> bool:
        self._check(name)
        callbacks = self.listeners[name]
        for i, registered in enumerate(callbacks):
            if registered is callback or getattr(registered, "__wrapped__", None) is callback:
                del callbacks[i]
                return True
        return False

    def emit(self, name: str, *args) -> int:
        """Call every listener of ``name`` in registration order.

        A failing listener is logged and does not prevent the others from
        running. Returns the number of listeners invoked.
        """
        self._check(name)
        callbacks = list(self.listeners[name])
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Listener for {name!r} failed: {e}", exc_info=True)
        return len(callbacks)

    def deliver(self, name: str, callback: Callable, *args) -> bool:
        """Call one listener of ``name`` if it is still registered."""
        self._check(name)
        if callback not in self.listeners[name]:
            return False
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Listener for {name!r} failed: {e}", exc_info=True)
        return True

    def listener_count(self, name: str) -> int:
        self._check(name)
        return len(self.listeners[name])

    def clear(self):
        for callbacks in self.listeners.values():
            callbacks.clear()
