"""
Channel client base.

A channel client is the public face of one socket channel. It composes a
:class:`ConnectionController` (lifecycle), a :class:`SubscriptionLedger`
(what to replay) and a :class:`MessageRouter` (who receives what), and plugs
itself into the controller as its :class:`ChannelAdapter`.
"""

import logging
import random
from abc import abstractmethod
from typing import Any, Iterable, List, Optional

from .connection import ChannelAdapter, ConnectionConfig, ConnectionController
from .events import ConnectionState, EventName, Listener, Unsubscribe
from .exceptions import SubscriptionValidationError
from .reporting import ErrorReporter, LoggingErrorReporter
from .router import MessageCallback, MessageRouter
from .subscriptions import ReplayStrategy, SubscriptionLedger
from .transport import Transport


logger = logging.getLogger(__name__)


def validate_id_list(values: Any, label: str = "ID") -> List[str]:
    """
    Check a list of identifiers before it touches any state.

    Raises:
        SubscriptionValidationError: If ``values`` is not a list/tuple of
            non-blank strings
    """
    if not isinstance(values, (list, tuple)):
        raise SubscriptionValidationError(f"{label}s must be given as a list")
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise SubscriptionValidationError(f"Each {label} must be a non-empty string")
    return list(values)


class ChannelClient(ChannelAdapter):
    """
    Base class for concrete channels.

    Subclasses set ``DEFAULT_URL``, return their replay strategy from
    :meth:`build_strategy` and implement :meth:`decode_and_route`.

    Keyword options are those of :class:`ConnectionConfig` (``auto_reconnect``,
    ``max_reconnect_attempts``, ``reconnect_base_delay``, ...).

    Usage:
        async with RtdsClient() as client:
            client.subscribe_crypto_prices(["btcusdt"])
            ...
    """

    DEFAULT_URL: str = ""
    DEFAULT_HEARTBEAT_INTERVAL: float = 30.0

    def __init__(self,
                 url: Optional[str] = None,
                 *,
                 transport: Optional[Transport] = None,
                 error_reporter: Optional[ErrorReporter] = None,
                 rng: Optional[random.Random] = None,
                 **options):
        options.setdefault("heartbeat_interval", self.DEFAULT_HEARTBEAT_INTERVAL)
        self.config = ConnectionConfig(url=url or self.DEFAULT_URL, **options)

        self._error_reporter = error_reporter or LoggingErrorReporter(
            logging.getLogger(type(self).__module__)
        )
        self._controller = ConnectionController(
            self.config,
            adapter=self,
            transport=transport,
            error_reporter=self._error_reporter,
            rng=rng,
        )
        self._ledger = SubscriptionLedger(self.build_strategy(), self._controller)
        self._controller.attach_ledger(self._ledger)
        self._router = MessageRouter(self._error_reporter, name=type(self).__name__)

    # Connection

    async def connect(self) -> None:
        await self._controller.connect()

    def disconnect(self) -> None:
        self._controller.disconnect()

    def send(self, data: Any) -> None:
        self._controller.send(data)

    @property
    def connection_state(self) -> ConnectionState:
        return self._controller.connection_state

    @property
    def is_connected(self) -> bool:
        return self._controller.is_connected

    @property
    def reconnect_attempts(self) -> int:
        return self._controller.reconnect_attempts

    @property
    def controller(self) -> ConnectionController:
        return self._controller

    @property
    def ledger(self) -> SubscriptionLedger:
        return self._ledger

    # Lifecycle events

    def on(self, event: EventName, callback: Listener) -> Unsubscribe:
        return self._controller.on(event, callback)

    def once(self, event: EventName, callback: Listener) -> Unsubscribe:
        return self._controller.once(event, callback)

    def off_all(self, event: Optional[EventName] = None) -> None:
        self._controller.off_all(event)

    # Adapter hooks

    @abstractmethod
    def build_strategy(self) -> ReplayStrategy:
        """Replay strategy used by this channel's ledger."""

    def on_cleanup(self) -> None:
        # Caller teardown: forget subscriptions and channel listeners
        self._ledger.clear()
        self._router.clear()

    # Helpers for subclasses

    def _add_route(self, key: str, callback: MessageCallback) -> Unsubscribe:
        return self._router.add(key, callback)

    def _add_routes(self, keys: Iterable[str], callback: MessageCallback) -> Unsubscribe:
        removers = [self._router.add(key, callback) for key in keys]

        def remove_all() -> None:
            for remove in removers:
                remove()

        return remove_all

    def _dispatch(self, key: str, payload: Any) -> int:
        return self._router.dispatch(key, payload)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
