"""
Client Events and Event Bus

Typed publish/subscribe primitive used by the connection controller to emit
lifecycle notifications. The set of events is closed: every event name maps
to exactly one payload type, checked at publish time.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .reporting import ErrorReporter, LoggingErrorReporter


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ClientEvent(str, Enum):
    """Events published by a client."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    STATE_CHANGE = "stateChange"
    RAW_MESSAGE = "rawMessage"


@dataclass(frozen=True)
class DisconnectedEvent:
    code: int
    reason: str


@dataclass(frozen=True)
class ReconnectingEvent:
    attempt: int
    max_attempts: Optional[int]  # None when unbounded


@dataclass(frozen=True)
class ErrorEvent:
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class StateChangeEvent:
    state: ConnectionState
    previous_state: ConnectionState


@dataclass(frozen=True)
class RawMessageEvent:
    text: str


EVENT_PAYLOAD_TYPES: Dict[ClientEvent, Optional[type]] = {
    ClientEvent.CONNECTED: None,
    ClientEvent.DISCONNECTED: DisconnectedEvent,
    ClientEvent.RECONNECTING: ReconnectingEvent,
    ClientEvent.ERROR: ErrorEvent,
    ClientEvent.STATE_CHANGE: StateChangeEvent,
    ClientEvent.RAW_MESSAGE: RawMessageEvent,
}

EventName = Union[ClientEvent, str]
Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class _Registration:
    """A single listener registration; identity matters, not the callback."""

    __slots__ = ("callback", "active", "once")

    def __init__(self, callback: Listener, once: bool = False):
        self.callback = callback
        self.active = True
        self.once = once


class EventBus:
    """
    Fan-out event dispatcher.

    Listeners are invoked in isolation: an exception raised by one listener is
    reported through the error reporter and never reaches the publisher or the
    remaining listeners. Dispatch iterates a snapshot of the registrations, so
    listeners may subscribe or unsubscribe (themselves or others) while an
    event is being delivered. A listener removed mid-dispatch is skipped for
    the rest of that dispatch.
    """

    def __init__(self, error_reporter: Optional[ErrorReporter] = None):
        self._listeners: Dict[ClientEvent, List[_Registration]] = {}
        self._error_reporter = error_reporter or LoggingErrorReporter(logger)

    def subscribe(self, event: EventName, callback: Listener) -> Unsubscribe:
        """
        Register a listener.

        Args:
            event: Event name
            callback: Called with the event payload

        Returns:
            Callable removing this registration (idempotent)
        """
        return self._add(self._resolve(event), _Registration(callback))

    def subscribe_once(self, event: EventName, callback: Listener) -> Unsubscribe:
        """Register a listener that fires at most once."""
        return self._add(self._resolve(event), _Registration(callback, once=True))

    def publish(self, event: EventName, payload: Any = None) -> None:
        """
        Deliver ``payload`` to every listener of ``event``.

        Raises:
            TypeError: If the payload does not match the event's contract
        """
        name = self._resolve(event)
        expected = EVENT_PAYLOAD_TYPES[name]
        if expected is None:
            if payload is not None:
                raise TypeError(f"Event '{name.value}' carries no payload")
        elif not isinstance(payload, expected):
            raise TypeError(
                f"Event '{name.value}' expects {expected.__name__}, got {type(payload).__name__}"
            )

        for registration in list(self._listeners.get(name, ())):
            if not registration.active:
                continue
            if registration.once:
                self._remove(name, registration)
            try:
                registration.callback(payload)
            except Exception as e:
                self._error_reporter.report_error(
                    f"Error in event listener for '{name.value}'",
                    {"event": name.value, "error": e},
                )

    def unsubscribe_all(self, event: Optional[EventName] = None) -> None:
        """Remove all listeners for ``event``, or for every event."""
        names = [self._resolve(event)] if event is not None else list(self._listeners)
        for name in names:
            for registration in self._listeners.pop(name, []):
                registration.active = False

    def listener_count(self, event: EventName) -> int:
        return len(self._listeners.get(self._resolve(event), ()))

    @staticmethod
    def _resolve(event: EventName) -> ClientEvent:
        try:
            return ClientEvent(event)
        except ValueError:
            raise TypeError(f"Unknown event: {event!r}") from None

    def _add(self, name: ClientEvent, registration: _Registration) -> Unsubscribe:
        self._listeners.setdefault(name, []).append(registration)

        def unsubscribe() -> None:
            self._remove(name, registration)

        return unsubscribe

    def _remove(self, name: ClientEvent, registration: _Registration) -> None:
        registration.active = False
        registrations = self._listeners.get(name)
        if not registrations:
            return
        try:
            registrations.remove(registration)
        except ValueError:
            return
        if not registrations:
            del self._listeners[name]
