"""
Message router.

Keyed fan-out of decoded payloads to channel listeners. Each listener runs in
isolation; a failing callback is reported and the rest still receive the
payload.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from .reporting import ErrorReporter, LoggingErrorReporter


logger = logging.getLogger(__name__)

MessageCallback = Callable[[Any], None]


class MessageRouter:
    """Dispatches payloads to the callbacks registered under a key."""

    def __init__(self, error_reporter: Optional[ErrorReporter] = None, name: str = "router"):
        self.name = name
        self._error_reporter = error_reporter or LoggingErrorReporter(logger)
        self._routes: Dict[str, List[MessageCallback]] = {}

    def add(self, key: str, callback: MessageCallback) -> Callable[[], None]:
        """Register ``callback`` for ``key``; returns a callable that removes it."""
        self._routes.setdefault(key, []).append(callback)

        def remove() -> None:
            callbacks = self._routes.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._routes[key]

        return remove

    def dispatch(self, key: str, payload: Any) -> int:
        """Deliver ``payload`` to every callback of ``key``; returns how many ran."""
        callbacks = list(self._routes.get(key, ()))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                self._error_reporter.report_error(
                    f"Error in {self.name} handler for '{key}'",
                    {"key": key, "error": e},
                )
        return len(callbacks)

    def listener_count(self, key: str) -> int:
        return len(self._routes.get(key, ()))

    def clear(self) -> None:
        self._routes.clear()
