"""
RTDS (real-time data socket) channel client.

Streams crypto prices, comments and activity. Subscriptions are keyed by
``topic:type``; the server is kept alive with typed ``PING`` messages every
five seconds.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..client import ChannelClient, validate_id_list
from ..exceptions import SubscriptionValidationError
from ..subscriptions import IncrementalReplay, SubscriptionEntry


logger = logging.getLogger(__name__)

DEFAULT_RTDS_URL = "wss://ws-live-data.polymarket.com"
RTDS_HEARTBEAT_INTERVAL = 5.0

TOPIC_CRYPTO_PRICES = "crypto_prices"
TOPIC_CRYPTO_PRICES_CHAINLINK = "crypto_prices_chainlink"
TOPIC_COMMENTS = "comments"
TOPIC_ACTIVITY = "activity"

# Listener key receiving every message
WILDCARD = "*"


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SubscriptionValidationError(f"{name} must be a non-empty string")
    return value


@dataclass(frozen=True)
class RtdsClobAuth:
    key: str
    secret: str
    passphrase: str

    def to_payload(self) -> Dict[str, str]:
        return {"key": self.key, "secret": self.secret, "passphrase": self.passphrase}


@dataclass(frozen=True)
class RtdsGammaAuth:
    address: str

    def to_payload(self) -> Dict[str, str]:
        return {"address": self.address}


@dataclass(frozen=True)
class RtdsSubscription:
    """One topic/type subscription with optional filters and credentials."""
    topic: str
    type: str
    filters: Optional[str] = None
    clob_auth: Optional[RtdsClobAuth] = None
    gamma_auth: Optional[RtdsGammaAuth] = None

    def __post_init__(self):
        _require_text(self.topic, "topic")
        _require_text(self.type, "type")

    @property
    def key(self) -> str:
        return f"{self.topic}:{self.type}"

    def to_payload(self, include_auth: bool = True) -> Dict[str, Any]:
        """Wire form; unset fields are omitted."""
        payload: Dict[str, Any] = {"topic": self.topic, "type": self.type}
        if self.filters is not None:
            payload["filters"] = self.filters
        if include_auth:
            if self.clob_auth is not None:
                payload["clob_auth"] = self.clob_auth.to_payload()
            if self.gamma_auth is not None:
                payload["gamma_auth"] = self.gamma_auth.to_payload()
        return payload


def _action_message(action: str, entries: List[SubscriptionEntry]) -> dict:
    include_auth = action == "subscribe"
    return {
        "action": action,
        "subscriptions": [entry.descriptor.to_payload(include_auth) for entry in entries],
    }


class RtdsClient(ChannelClient):
    """
    Real-time data socket client.

    Example:
        async with RtdsClient() as client:
            client.on_crypto_price(lambda message: print(message["payload"]))
            client.subscribe_crypto_prices(["btcusdt", "ethusdt"])
            await asyncio.sleep(60)
    """

    DEFAULT_URL = DEFAULT_RTDS_URL
    DEFAULT_HEARTBEAT_INTERVAL = RTDS_HEARTBEAT_INTERVAL

    def build_strategy(self) -> IncrementalReplay:
        return IncrementalReplay(
            build_subscribe=lambda entries: _action_message("subscribe", entries),
            build_unsubscribe=lambda entries: _action_message("unsubscribe", entries),
        )

    def build_heartbeat_probe(self, send: Callable[[Any], None]) -> Callable[[], None]:
        return lambda: send({"type": "PING"})

    # Crypto prices

    def subscribe_crypto_prices(self, symbols: Optional[List[str]] = None) -> None:
        """Binance prices, optionally limited to ``symbols`` (e.g. ``["btcusdt"]``)."""
        filters = None
        if symbols is not None:
            filters = ",".join(validate_id_list(symbols, "symbol"))
        self.subscribe_custom(RtdsSubscription(TOPIC_CRYPTO_PRICES, "update", filters))

    def unsubscribe_crypto_prices(self) -> None:
        self.unsubscribe_custom(TOPIC_CRYPTO_PRICES, "update")

    def subscribe_crypto_prices_chainlink(self, symbol: Optional[str] = None) -> None:
        """Chainlink prices, optionally for one ``symbol`` (e.g. ``"eth/usd"``)."""
        filters = ""
        if symbol is not None:
            filters = json.dumps({"symbol": _require_text(symbol, "symbol")}, separators=(",", ":"))
        self.subscribe_custom(RtdsSubscription(TOPIC_CRYPTO_PRICES_CHAINLINK, "*", filters))

    def unsubscribe_crypto_prices_chainlink(self) -> None:
        self.unsubscribe_custom(TOPIC_CRYPTO_PRICES_CHAINLINK, "*")

    def on_crypto_price(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Price updates from either source."""
        return self._add_routes([TOPIC_CRYPTO_PRICES, TOPIC_CRYPTO_PRICES_CHAINLINK], callback)

    # Comments

    def subscribe_comments(self,
                           type: str = "comment_created",
                           gamma_auth: Optional[RtdsGammaAuth] = None) -> None:
        self.subscribe_custom(RtdsSubscription(TOPIC_COMMENTS, type, gamma_auth=gamma_auth))

    def unsubscribe_comments(self, type: str = "comment_created") -> None:
        self.unsubscribe_custom(TOPIC_COMMENTS, type)

    def on_comment(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route(TOPIC_COMMENTS, callback)

    # Activity

    def subscribe_activity(self,
                           type: str,
                           clob_auth: Optional[RtdsClobAuth] = None,
                           gamma_auth: Optional[RtdsGammaAuth] = None) -> None:
        _require_text(type, "type")
        self.subscribe_custom(RtdsSubscription(TOPIC_ACTIVITY, type,
                                               clob_auth=clob_auth, gamma_auth=gamma_auth))

    def unsubscribe_activity(self, type: str) -> None:
        _require_text(type, "type")
        self.unsubscribe_custom(TOPIC_ACTIVITY, type)

    def on_activity(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route(TOPIC_ACTIVITY, callback)

    # Generic

    def subscribe_custom(self, subscription: RtdsSubscription) -> None:
        """Add or replace the subscription for ``subscription.key``."""
        if not isinstance(subscription, RtdsSubscription):
            raise SubscriptionValidationError("Expected an RtdsSubscription")
        self._ledger.add(subscription.key, subscription)

    def unsubscribe_custom(self, topic: str, type: str) -> None:
        self._ledger.remove(f"{_require_text(topic, 'topic')}:{_require_text(type, 'type')}")

    @property
    def subscriptions(self) -> List[RtdsSubscription]:
        return [entry.descriptor for entry in self._ledger.entries()]

    def on_rtds_message(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Every message, whatever the topic."""
        return self._add_route(WILDCARD, callback)

    def decode_and_route(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.debug(f"Ignoring non-object RTDS payload: {payload!r}")
            return
        topic = payload.get("topic")
        if isinstance(topic, str) and topic:
            self._dispatch(topic, payload)
        self._dispatch(WILDCARD, payload)
