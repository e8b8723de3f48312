"""
Real-time Client Package

Resilient socket connections with automatic reconnection and subscription
replay:
- ConnectionController: lifecycle state machine, timeouts, backoff, heartbeats
- SubscriptionLedger: active subscriptions replayed after every reconnection
- EventBus: typed lifecycle notifications
- Channel clients for the Polymarket CLOB and RTDS sockets
"""

from .events import (
    ClientEvent,
    ConnectionState,
    DisconnectedEvent,
    ErrorEvent,
    EventBus,
    RawMessageEvent,
    ReconnectingEvent,
    StateChangeEvent,
)

from .exceptions import (
    ConnectionClosedByClientError,
    ConnectionTimeoutError,
    MaxRetriesExhaustedError,
    NotConnectedError,
    RealtimeError,
    SubscriptionValidationError,
    TransportConstructionError,
    TransportError,
)

from .connection import ChannelAdapter, ConnectionConfig, ConnectionController
from .heartbeat import HeartbeatMonitor
from .reconnect import ReconnectPolicy, backoff_delay, next_delay, should_retry
from .reporting import ErrorReporter, LoggingErrorReporter
from .router import MessageRouter
from .subscriptions import (
    IncrementalReplay,
    ReplayStrategy,
    SnapshotReplay,
    SubscriptionEntry,
    SubscriptionLedger,
)
from .transport import Transport, TransportCallbacks, WebsocketsOptions, WebsocketsTransport
from .client import ChannelClient

from .channels import (
    ClobAuth,
    ClobClient,
    ClobMarketClient,
    ClobUserClient,
    RtdsClient,
    RtdsClobAuth,
    RtdsGammaAuth,
    RtdsSubscription,
)

__all__ = [
    # Events
    "ClientEvent",
    "ConnectionState",
    "DisconnectedEvent",
    "ErrorEvent",
    "EventBus",
    "RawMessageEvent",
    "ReconnectingEvent",
    "StateChangeEvent",

    # Errors
    "ConnectionClosedByClientError",
    "ConnectionTimeoutError",
    "MaxRetriesExhaustedError",
    "NotConnectedError",
    "RealtimeError",
    "SubscriptionValidationError",
    "TransportConstructionError",
    "TransportError",

    # Core
    "ChannelAdapter",
    "ConnectionConfig",
    "ConnectionController",
    "HeartbeatMonitor",
    "ReconnectPolicy",
    "backoff_delay",
    "next_delay",
    "should_retry",
    "ErrorReporter",
    "LoggingErrorReporter",
    "MessageRouter",
    "IncrementalReplay",
    "ReplayStrategy",
    "SnapshotReplay",
    "SubscriptionEntry",
    "SubscriptionLedger",
    "Transport",
    "TransportCallbacks",
    "WebsocketsOptions",
    "WebsocketsTransport",
    "ChannelClient",

    # Channels
    "ClobAuth",
    "ClobClient",
    "ClobMarketClient",
    "ClobUserClient",
    "RtdsClient",
    "RtdsClobAuth",
    "RtdsGammaAuth",
    "RtdsSubscription",
]
