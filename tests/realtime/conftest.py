"""Shared fixtures for the realtime test suite."""

import random

import pytest

from mocks import MockTransport
from realtime.connection import ConnectionConfig


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def fast_config():
    """Millisecond-scale timings so lifecycle tests run quickly."""
    return ConnectionConfig(
        url="wss://test.example.com/ws",
        reconnect_base_delay=0.01,
        max_reconnect_delay=0.05,
        reconnect_jitter=0.0,
        heartbeat_interval=10.0,
        connection_timeout=0.1,
    )
