"""
Real-time Client Exceptions

Error taxonomy shared by the connection controller, the subscription ledger
and the channel clients. Transport-level failures are recovered by the state
machine and surfaced as ``error`` events; validation and send errors are
raised synchronously to the caller.
"""


class RealtimeError(Exception):
    """Base class for all real-time client errors."""
    pass


class ConnectionTimeoutError(RealtimeError):
    """Raised when the transport did not open within the configured window."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Connection timeout after {timeout:g}s")


class TransportConstructionError(RealtimeError):
    """Raised when opening the transport failed synchronously."""
    pass


class TransportError(RealtimeError):
    """Error signalled by an open or opening transport."""
    pass


class ConnectionClosedByClientError(TransportError):
    """A pending connect was abandoned because the caller disconnected."""
    pass


class NotConnectedError(RealtimeError):
    """Raised when sending while the connection is not established."""

    def __init__(self, message: str = "WebSocket is not connected"):
        super().__init__(message)


class MaxRetriesExhaustedError(RealtimeError):
    """Raised (as an error event) when reconnect attempts are used up."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Max reconnection attempts reached ({attempts})")


class SubscriptionValidationError(RealtimeError, ValueError):
    """Malformed subscribe/unsubscribe arguments."""
    pass
