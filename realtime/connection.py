"""
Connection Controller

Owns the transport handle and the connection lifecycle state machine:
connection establishment with timeout, failure classification, exponential
backoff reconnection, heartbeats while connected, and subscription replay on
every successful (re)connection.

State machine::

    disconnected --connect()------------------------------> connecting
    connecting   --transport opens-------------------------> connected
    connecting   --timeout / closed before open-------------> reconnecting | disconnected
    connected    --closed by caller------------------------> disconnected
    connected    --closed by peer or network---------------> reconnecting | disconnected
    reconnecting --delay elapses, transport opens----------> connected
    reconnecting --attempt fails---------------------------> reconnecting | disconnected
    any          --disconnect()----------------------------> disconnected

All callbacks run on one asyncio event loop. Every transport and timer
callback carries the generation it was armed for; ``disconnect()`` and every
new transport bump the generation so callbacks queued before that point are
ignored.
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from .events import (
    ClientEvent,
    ConnectionState,
    DisconnectedEvent,
    ErrorEvent,
    EventBus,
    EventName,
    Listener,
    RawMessageEvent,
    ReconnectingEvent,
    StateChangeEvent,
    Unsubscribe,
)
from .exceptions import (
    ConnectionClosedByClientError,
    ConnectionTimeoutError,
    MaxRetriesExhaustedError,
    NotConnectedError,
    TransportConstructionError,
    TransportError,
)
from .heartbeat import HeartbeatMonitor
from .reconnect import ReconnectPolicy
from .reporting import ErrorReporter, LoggingErrorReporter
from .transport import ABNORMAL_CLOSURE, NORMAL_CLOSURE, Transport, TransportCallbacks, TransportHandle, WebsocketsTransport

if TYPE_CHECKING:
    from .subscriptions import SubscriptionLedger


logger = logging.getLogger(__name__)


def _consume_outcome(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


@dataclass
class ConnectionConfig:
    """Configuration for one controller. Durations are in seconds."""
    url: str
    auto_reconnect: bool = True
    max_reconnect_attempts: Optional[int] = None  # None = unbounded
    reconnect_base_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    reconnect_jitter: float = 1.0
    heartbeat_interval: float = 30.0
    connection_timeout: float = 10.0

    def __post_init__(self):
        if not isinstance(self.url, str) or not self.url:
            raise ValueError("url must be a non-empty string")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.reconnect_base_delay < 0 or self.max_reconnect_delay < 0:
            raise ValueError("reconnect delays must be >= 0")
        if self.reconnect_jitter < 0:
            raise ValueError("reconnect_jitter must be >= 0")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")


class ChannelAdapter(ABC):
    """
    Channel-specific behaviour plugged into a :class:`ConnectionController`.

    The controller calls these hooks; adapters never touch the transport.
    """

    def on_connected(self) -> None:
        """Called after replay, right before the ``connected`` event."""

    def on_cleanup(self) -> None:
        """Called when the caller disconnects (subscriber teardown)."""

    def build_heartbeat_probe(self, send: Callable[[Any], None]) -> Callable[[], None]:
        """Return the liveness probe; the default sends a ``ping`` text frame."""
        return lambda: send("ping")

    @abstractmethod
    def decode_and_route(self, payload: Any) -> None:
        """Dispatch an inbound payload (parsed JSON, or the raw text)."""


class _PassiveAdapter(ChannelAdapter):
    def decode_and_route(self, payload: Any) -> None:
        logger.debug(f"Unrouted message: {payload!r}")


class ConnectionController:
    """
    Resilient connection to a single socket endpoint.

    Example:
        controller = ConnectionController(ConnectionConfig(url="wss://example.com/ws"), adapter)
        controller.on("stateChange", print)
        await controller.connect()
        controller.send({"action": "subscribe"})
        controller.disconnect()
    """

    def __init__(self,
                 config: ConnectionConfig,
                 adapter: Optional[ChannelAdapter] = None,
                 transport: Optional[Transport] = None,
                 error_reporter: Optional[ErrorReporter] = None,
                 rng: Optional[random.Random] = None):
        self.config = config
        self._adapter = adapter or _PassiveAdapter()
        self._transport = transport or WebsocketsTransport()
        self._error_reporter = error_reporter or LoggingErrorReporter(logger)
        self._events = EventBus(self._error_reporter)
        self._policy = ReconnectPolicy(
            base_delay=config.reconnect_base_delay,
            max_delay=config.max_reconnect_delay,
            max_attempts=config.max_reconnect_attempts,
            jitter=config.reconnect_jitter,
            rng=rng,
        )
        self._heartbeat = HeartbeatMonitor(lambda: self._state is ConnectionState.CONNECTED,
                                           self._error_reporter)
        self._ledger: Optional["SubscriptionLedger"] = None

        self._state = ConnectionState.DISCONNECTED
        self._handle: Optional[TransportHandle] = None
        self._generation = 0
        self._intentional_close = False
        self._attempt_in_flight = False

        # Pending timers, at most one of each kind
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None

        # Caller awaiting connect(), if any
        self._waiter: Optional[asyncio.Future] = None

    # Public API

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._policy.attempt_count

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    def attach_ledger(self, ledger: "SubscriptionLedger") -> None:
        """Register the ledger replayed after every successful open."""
        self._ledger = ledger

    def on(self, event: EventName, callback: Listener) -> Unsubscribe:
        return self._events.subscribe(event, callback)

    def once(self, event: EventName, callback: Listener) -> Unsubscribe:
        return self._events.subscribe_once(event, callback)

    def off_all(self, event: Optional[EventName] = None) -> None:
        self._events.unsubscribe_all(event)

    def listener_count(self, event: EventName) -> int:
        return self._events.listener_count(event)

    async def connect(self) -> None:
        """
        Open the connection.

        Returns immediately when already connected or connecting. From
        ``reconnecting`` the pending backoff delay is skipped.

        Raises:
            ConnectionTimeoutError: The transport did not open in time
            TransportConstructionError: Opening the transport raised
            TransportError: The transport closed before opening
            ConnectionClosedByClientError: disconnect() was called meanwhile
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return

        loop = asyncio.get_running_loop()
        self._intentional_close = False
        if self._waiter is None or self._waiter.done():
            self._waiter = loop.create_future()
            # Outcome may go unobserved once every caller is cancelled
            self._waiter.add_done_callback(_consume_outcome)
        waiter = self._waiter

        if self._state is ConnectionState.RECONNECTING:
            if not self._attempt_in_flight:
                self._cancel_reconnect_timer()
                logger.info(f"Connecting now instead of waiting ({self.config.url})")
                self._open_transport()
        else:
            # Fresh cycle
            self._policy.reset()
            self._set_state(ConnectionState.CONNECTING)
            # A stateChange listener may have disconnected already
            if self._state is ConnectionState.CONNECTING:
                self._open_transport()

        # Shared by concurrent callers; cancelling one must not cancel the rest
        await asyncio.shield(waiter)

    def disconnect(self) -> None:
        """Close the connection and suppress reconnection. Idempotent."""
        self._intentional_close = True
        # The transport's own close callback becomes stale from here on
        self._generation += 1
        self._attempt_in_flight = False
        was_connected = self._state is ConnectionState.CONNECTED

        self._cancel_connect_timer()
        self._cancel_reconnect_timer()
        self._heartbeat.stop()

        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close(NORMAL_CLOSURE, "Client disconnect")
            except Exception as e:
                self._error_reporter.report_error("Error closing transport", {"error": e})
            logger.info(f"WebSocket disconnected: {self.config.url}")

        if was_connected:
            self._events.publish(ClientEvent.DISCONNECTED,
                                 DisconnectedEvent(NORMAL_CLOSURE, "Client disconnect"))

        self._policy.reset()
        self._reject_waiter(ConnectionClosedByClientError("Disconnected before the connection opened"))

        try:
            self._adapter.on_cleanup()
        except Exception as e:
            self._error_reporter.report_error("Cleanup hook failed", {"error": e})

        self._set_state(ConnectionState.DISCONNECTED)

    def send(self, data: Any) -> None:
        """
        Send a message; non-string payloads are JSON encoded.

        Raises:
            NotConnectedError: Unless the state is exactly ``connected``
        """
        if self._state is not ConnectionState.CONNECTED or self._handle is None:
            raise NotConnectedError()

        message = data if isinstance(data, str) else json.dumps(data)
        self._handle.send(message)
        logger.debug(f"Sent: {message}")

    # Transport lifecycle

    def _open_transport(self) -> None:
        self._generation += 1
        generation = self._generation

        callbacks = TransportCallbacks(
            on_open=lambda: self._handle_open(generation),
            on_message=lambda text: self._handle_message(generation, text),
            on_close=lambda code, reason: self._handle_close(generation, code, reason),
            on_error=lambda error: self._handle_transport_error(generation, error),
        )

        self._cancel_connect_timer()
        self._connect_timer = asyncio.get_running_loop().call_later(
            self.config.connection_timeout, self._handle_connect_timeout, generation
        )
        self._attempt_in_flight = True

        try:
            self._handle = self._transport.open(self.config.url, callbacks)
        except Exception as e:
            self._cancel_connect_timer()
            self._attempt_in_flight = False
            error = TransportConstructionError(f"Failed to open transport: {e}")
            error.__cause__ = e
            self._publish_error(error)
            self._reject_waiter(error)
            if generation != self._generation:
                return
            if self._state is ConnectionState.RECONNECTING:
                self._schedule_reconnect()
            else:
                self._set_state(ConnectionState.DISCONNECTED)
            return

        logger.info(f"Connecting to {self.config.url}")

    def _handle_open(self, generation: int) -> None:
        if generation != self._generation:
            return

        self._attempt_in_flight = False
        self._cancel_connect_timer()
        self._policy.reset()
        self._set_state(ConnectionState.CONNECTED)
        if generation != self._generation:
            return

        self._heartbeat.start(self.config.heartbeat_interval,
                              self._adapter.build_heartbeat_probe(self.send))

        if self._ledger is not None:
            try:
                self._ledger.replay()
            except Exception as e:
                self._publish_error(e)
        if generation != self._generation:
            return

        try:
            self._adapter.on_connected()
        except Exception as e:
            self._publish_error(e)
        if generation != self._generation:
            return

        logger.info(f"WebSocket connection established: {self.config.url}")
        self._events.publish(ClientEvent.CONNECTED)
        if generation == self._generation:
            self._resolve_waiter()

    def _handle_close(self, generation: int, code: int, reason: str) -> None:
        if generation != self._generation:
            return

        self._attempt_in_flight = False
        self._handle = None
        self._cancel_connect_timer()
        self._heartbeat.stop()

        logger.info(f"WebSocket closed (code={code}, reason={reason!r})")
        self._events.publish(ClientEvent.DISCONNECTED, DisconnectedEvent(code, reason))
        # Caller-initiated closes never get here: disconnect() retires the generation
        if generation != self._generation:
            return

        self._reject_waiter(TransportError(
            f"Connection closed before opening (code={code}, reason={reason!r})"
        ))
        self._schedule_reconnect()

    def _handle_transport_error(self, generation: int, error: Exception) -> None:
        if generation != self._generation:
            return
        wrapped = TransportError(f"WebSocket error: {error}")
        wrapped.__cause__ = error
        self._publish_error(wrapped)

    def _handle_message(self, generation: int, text: str) -> None:
        if generation != self._generation:
            return

        self._events.publish(ClientEvent.RAW_MESSAGE, RawMessageEvent(text))

        try:
            payload = json.loads(text)
        except ValueError:
            # Not JSON, pass as-is
            payload = text

        try:
            self._adapter.decode_and_route(payload)
        except Exception as e:
            self._error_reporter.report_error("Message handler error", {"error": e})

    # Timers

    def _handle_connect_timeout(self, generation: int) -> None:
        self._connect_timer = None
        if generation != self._generation or self._intentional_close:
            return

        error = ConnectionTimeoutError(self.config.connection_timeout)
        logger.warning(f"{error} ({self.config.url})")

        # Abandon the transport; its late callbacks belong to a dead generation
        self._generation += 1
        generation = self._generation
        self._attempt_in_flight = False
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close()
            except Exception as e:
                self._error_reporter.report_error("Error closing timed out transport", {"error": e})

        self._publish_error(error)
        # Stands in for the abandoned transport's own close
        self._events.publish(ClientEvent.DISCONNECTED,
                             DisconnectedEvent(ABNORMAL_CLOSURE, "Connection timeout"))
        self._reject_waiter(error)
        if generation != self._generation:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self.config.auto_reconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if not self._policy.should_retry():
            attempts = self._policy.attempt_count
            logger.error(f"Max reconnection attempts reached for {self.config.url}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._publish_error(MaxRetriesExhaustedError(attempts))
            return

        attempt = self._policy.record_attempt()
        delay = self._policy.next_delay()
        generation = self._generation

        self._set_state(ConnectionState.RECONNECTING)
        self._events.publish(
            ClientEvent.RECONNECTING,
            ReconnectingEvent(attempt=attempt, max_attempts=self.config.max_reconnect_attempts),
        )
        if generation != self._generation or self._state is not ConnectionState.RECONNECTING:
            return

        logger.info(f"Scheduling reconnection attempt {attempt} in {delay:.2f}s")
        self._cancel_reconnect_timer()
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._handle_reconnect_timer, generation
        )

    def _handle_reconnect_timer(self, generation: int) -> None:
        self._reconnect_timer = None
        if generation != self._generation or self._intentional_close:
            return
        logger.info(f"Attempting reconnection (attempt {self._policy.attempt_count})")
        self._open_transport()

    def _cancel_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # Helpers

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        previous_state = self._state
        self._state = new_state
        logger.debug(f"State change: {previous_state.value} -> {new_state.value}")
        self._events.publish(ClientEvent.STATE_CHANGE, StateChangeEvent(new_state, previous_state))

    def _publish_error(self, error: Exception) -> None:
        logger.warning(f"Connection error: {error}")
        self._events.publish(ClientEvent.ERROR, ErrorEvent(error))

    def _resolve_waiter(self) -> None:
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def _reject_waiter(self, error: Exception) -> None:
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)
