"""
Subscription ledger.

Per-subscriber record of active subscriptions. While connected, changes are
sent right away as deltas; after every (re)connection the controller calls
:meth:`SubscriptionLedger.replay` so the server learns the full set again.

How messages are built depends on the channel, so it is a pluggable
:class:`ReplayStrategy`:

- :class:`IncrementalReplay` sends delta subscribe/unsubscribe messages and
  one batched subscribe on replay.
- :class:`SnapshotReplay` sends the complete (usually authenticated) state on
  every change and on every replay.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .exceptions import SubscriptionValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionEntry:
    key: str
    descriptor: Any


class MessageSender(Protocol):
    @property
    def is_connected(self) -> bool:
        ...

    def send(self, data: Any) -> None:
        ...


class ReplayStrategy(ABC):
    """Builds the wire messages for ledger changes and replays."""

    @abstractmethod
    def subscribe_messages(self,
                           changed: List[SubscriptionEntry],
                           current: List[SubscriptionEntry]) -> List[Any]:
        """Messages for newly added or changed entries."""

    @abstractmethod
    def unsubscribe_messages(self,
                             removed: List[SubscriptionEntry],
                             current: List[SubscriptionEntry]) -> List[Any]:
        """Messages for removed entries."""

    @abstractmethod
    def replay_messages(self, current: List[SubscriptionEntry]) -> List[Any]:
        """Messages that restore ``current`` on a fresh connection."""


class IncrementalReplay(ReplayStrategy):
    """
    Delta messages while connected, one batched subscribe on replay.

    Args:
        build_subscribe: Builds a subscribe message from a list of entries
        build_unsubscribe: Builds an unsubscribe message from a list of entries
        build_replay: Builds the replay message (defaults to ``build_subscribe``)
    """

    def __init__(self,
                 build_subscribe: Callable[[List[SubscriptionEntry]], Any],
                 build_unsubscribe: Callable[[List[SubscriptionEntry]], Any],
                 build_replay: Optional[Callable[[List[SubscriptionEntry]], Any]] = None):
        self._build_subscribe = build_subscribe
        self._build_unsubscribe = build_unsubscribe
        self._build_replay = build_replay or build_subscribe

    def subscribe_messages(self, changed, current):
        return [self._build_subscribe(changed)] if changed else []

    def unsubscribe_messages(self, removed, current):
        return [self._build_unsubscribe(removed)] if removed else []

    def replay_messages(self, current):
        return [self._build_replay(current)] if current else []


class SnapshotReplay(ReplayStrategy):
    """
    Full-state messages for channels where subscribing is atomic.

    Args:
        build_snapshot: Builds the complete state message from all entries
        replay_when_empty: Send the snapshot on replay even with no entries
    """

    def __init__(self,
                 build_snapshot: Callable[[List[SubscriptionEntry]], Any],
                 replay_when_empty: bool = True):
        self._build_snapshot = build_snapshot
        self.replay_when_empty = replay_when_empty

    def subscribe_messages(self, changed, current):
        return [self._build_snapshot(current)] if changed else []

    def unsubscribe_messages(self, removed, current):
        return [self._build_snapshot(current)] if removed else []

    def replay_messages(self, current):
        if not current and not self.replay_when_empty:
            return []
        return [self._build_snapshot(current)]


class SubscriptionLedger:
    """
    Active subscriptions of one subscriber, keyed by string.

    Validation happens before any mutation, so a rejected call leaves the
    ledger untouched. Changes made while not connected are only recorded and
    picked up by the next replay.
    """

    def __init__(self, strategy: ReplayStrategy, sender: MessageSender):
        self.strategy = strategy
        self._sender = sender
        self._entries: Dict[str, SubscriptionEntry] = {}

    def add(self, key: str, descriptor: Any = None) -> List[str]:
        """Insert or overwrite one entry; returns the keys that changed."""
        return self.add_many({key: descriptor})

    def add_many(self, descriptors: Mapping[str, Any]) -> List[str]:
        """
        Insert or overwrite several entries.

        Returns:
            Keys that were new or whose descriptor changed

        Raises:
            SubscriptionValidationError: If any key is invalid
        """
        if not isinstance(descriptors, Mapping):
            raise SubscriptionValidationError("Subscriptions must be given as a mapping")
        for key in descriptors:
            self._validate_key(key)

        changed = []
        for key, descriptor in descriptors.items():
            existing = self._entries.get(key)
            if existing is not None and existing.descriptor == descriptor:
                continue
            entry = SubscriptionEntry(key, descriptor)
            self._entries[key] = entry
            changed.append(entry)

        if changed:
            logger.debug(f"Subscriptions added: {[e.key for e in changed]}")
            if self._sender.is_connected:
                self._send_all(self.strategy.subscribe_messages(changed, self.entries()))

        return [entry.key for entry in changed]

    def remove(self, key: str) -> List[str]:
        """Delete one entry; returns ``[key]`` if it was present."""
        return self.remove_many([key])

    def remove_many(self, keys: Iterable[str]) -> List[str]:
        """
        Delete several entries; unknown keys are ignored.

        Raises:
            SubscriptionValidationError: If any key is invalid
        """
        if isinstance(keys, str):
            raise SubscriptionValidationError("Expected a collection of keys, got a single string")
        keys = list(keys)
        for key in keys:
            self._validate_key(key)

        removed = []
        for key in keys:
            entry = self._entries.pop(key, None)
            if entry is not None:
                removed.append(entry)

        if removed:
            logger.debug(f"Subscriptions removed: {[e.key for e in removed]}")
            if self._sender.is_connected:
                self._send_all(self.strategy.unsubscribe_messages(removed, self.entries()))

        return [entry.key for entry in removed]

    def replay(self) -> None:
        """Re-send the whole ledger; called right after a (re)connection."""
        messages = self.strategy.replay_messages(self.entries())
        if messages:
            logger.info(f"Replaying {len(self._entries)} subscription(s)")
        self._send_all(messages)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[SubscriptionEntry]:
        return list(self._entries.values())

    def get(self, key: str) -> Optional[SubscriptionEntry]:
        return self._entries.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _send_all(self, messages: List[Any]) -> None:
        for message in messages:
            self._sender.send(message)

    @staticmethod
    def _validate_key(key: Any) -> None:
        if not isinstance(key, str) or not key:
            raise SubscriptionValidationError(f"Subscription key must be a non-empty string, got {key!r}")
