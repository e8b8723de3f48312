"""
CLOB channel clients.

- ClobMarketClient: public order book channel, incremental subscriptions
- ClobUserClient: authenticated order/trade channel, full-snapshot subscriptions
- ClobClient: lazily created pair of both, sharing options
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..client import ChannelClient, validate_id_list
from ..exceptions import SubscriptionValidationError
from ..subscriptions import IncrementalReplay, SnapshotReplay, SubscriptionEntry


logger = logging.getLogger(__name__)

DEFAULT_CLOB_MARKET_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
DEFAULT_CLOB_USER_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/user"

# Listener key receiving every event of a channel
ALL_MESSAGES = "message"


@dataclass(frozen=True)
class ClobAuth:
    """API credentials for the user channel."""
    api_key: str
    secret: str
    passphrase: str

    def __post_init__(self):
        for name in ("api_key", "secret", "passphrase"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise SubscriptionValidationError(f"auth.{name} must be a non-empty string")

    def to_payload(self) -> Dict[str, str]:
        return {"apiKey": self.api_key, "secret": self.secret, "passphrase": self.passphrase}


class _ClobChannel(ChannelClient):
    """Shared routing: events are keyed by ``event_type``, batches arrive as lists."""

    def decode_and_route(self, payload: Any) -> None:
        events = payload if isinstance(payload, list) else [payload]
        for event in events:
            if not isinstance(event, dict):
                continue
            event_type = event.get("event_type")
            if isinstance(event_type, str):
                self._dispatch(event_type, event)
            self._dispatch(ALL_MESSAGES, event)


class ClobMarketClient(_ClobChannel):
    """
    Market channel: order book snapshots, price changes and trades per asset.

    Example:
        client = ClobMarketClient()
        client.on_book(lambda event: print(event["asset_id"]))
        await client.connect()
        client.subscribe(["<token id>"])
    """

    DEFAULT_URL = DEFAULT_CLOB_MARKET_URL

    def build_strategy(self) -> IncrementalReplay:
        return IncrementalReplay(
            build_subscribe=lambda entries: self._asset_message(entries, "subscribe"),
            build_unsubscribe=lambda entries: self._asset_message(entries, "unsubscribe"),
            build_replay=lambda entries: {"type": "MARKET", "assets_ids": [e.key for e in entries]},
        )

    def subscribe(self, asset_ids: List[str]) -> None:
        """Subscribe to asset (token) IDs; already subscribed IDs are skipped."""
        asset_ids = validate_id_list(asset_ids, "asset ID")
        new_ids = [asset_id for asset_id in asset_ids if asset_id not in self._ledger]
        self._ledger.add_many(dict.fromkeys(new_ids))

    def unsubscribe(self, asset_ids: List[str]) -> None:
        asset_ids = validate_id_list(asset_ids, "asset ID")
        self._ledger.remove_many(asset_ids)

    @property
    def subscribed_assets(self) -> List[str]:
        return self._ledger.keys()

    def on_book(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Full order book snapshots."""
        return self._add_route("book", callback)

    def on_price_change(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route("price_change", callback)

    def on_tick_size_change(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route("tick_size_change", callback)

    def on_last_trade_price(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route("last_trade_price", callback)

    def on_market_message(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Every market event regardless of type."""
        return self._add_route(ALL_MESSAGES, callback)

    @staticmethod
    def _asset_message(entries: List[SubscriptionEntry], operation: str) -> dict:
        return {"assets_ids": [entry.key for entry in entries], "operation": operation}


class ClobUserClient(_ClobChannel):
    """
    User channel: the authenticated account's orders and trades.

    The server expects the complete authenticated market list on every change,
    so each subscribe/unsubscribe and each (re)connection sends the full
    snapshot, also when no market is subscribed.
    """

    DEFAULT_URL = DEFAULT_CLOB_USER_URL

    def __init__(self, auth: ClobAuth, url: Optional[str] = None, **options):
        if not isinstance(auth, ClobAuth):
            raise SubscriptionValidationError("auth credentials are required")
        self.auth = auth
        super().__init__(url, **options)

    def build_strategy(self) -> SnapshotReplay:
        return SnapshotReplay(self._snapshot_message, replay_when_empty=True)

    def subscribe(self, market_ids: List[str]) -> None:
        """Subscribe to market (condition) IDs."""
        market_ids = validate_id_list(market_ids, "market ID")
        new_ids = [market_id for market_id in market_ids if market_id not in self._ledger]
        self._ledger.add_many(dict.fromkeys(new_ids))

    def unsubscribe(self, market_ids: List[str]) -> None:
        market_ids = validate_id_list(market_ids, "market ID")
        self._ledger.remove_many(market_ids)

    @property
    def subscribed_markets(self) -> List[str]:
        return self._ledger.keys()

    def on_trade(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route("trade", callback)

    def on_order(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route("order", callback)

    def on_user_message(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self._add_route(ALL_MESSAGES, callback)

    def _snapshot_message(self, entries: List[SubscriptionEntry]) -> dict:
        return {
            "auth": self.auth.to_payload(),
            "type": "USER",
            "markets": [entry.key for entry in entries],
        }


class ClobClient:
    """
    Market and user channels behind one object.

    Both clients are created on first access with the same options; the user
    client additionally needs ``auth``.
    """

    def __init__(self,
                 auth: Optional[ClobAuth] = None,
                 market_url: str = DEFAULT_CLOB_MARKET_URL,
                 user_url: str = DEFAULT_CLOB_USER_URL,
                 **options):
        self.auth = auth
        self.market_url = market_url
        self.user_url = user_url
        self._options = options
        self._market: Optional[ClobMarketClient] = None
        self._user: Optional[ClobUserClient] = None

    @property
    def market(self) -> ClobMarketClient:
        if self._market is None:
            self._market = ClobMarketClient(self.market_url, **self._options)
        return self._market

    @property
    def user(self) -> ClobUserClient:
        if self._user is None:
            if self.auth is None:
                raise SubscriptionValidationError("ClobClient requires auth credentials for the user channel")
            self._user = ClobUserClient(self.auth, self.user_url, **self._options)
        return self._user

    async def connect_market(self) -> None:
        await self.market.connect()

    async def connect_user(self) -> None:
        await self.user.connect()

    async def connect_all(self) -> None:
        """Connect both channels concurrently."""
        await asyncio.gather(self.connect_market(), self.connect_user())

    def disconnect(self) -> None:
        if self._market is not None:
            self._market.disconnect()
        if self._user is not None:
            self._user.disconnect()
