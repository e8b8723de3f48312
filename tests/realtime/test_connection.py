"""
Test Suite for the Connection Controller

Lifecycle state machine driven through the in-memory MockTransport:
connection establishment, timeouts, reconnection with backoff, intentional
disconnects, heartbeats and message intake.
"""

import asyncio
import dataclasses

import pytest
from unittest.mock import MagicMock

from mocks import MockTransport, open_client, wait_for
from realtime.connection import ChannelAdapter, ConnectionConfig, ConnectionController
from realtime.events import ClientEvent, ConnectionState, ErrorEvent
from realtime.exceptions import (
    ConnectionClosedByClientError,
    ConnectionTimeoutError,
    MaxRetriesExhaustedError,
    NotConnectedError,
    TransportConstructionError,
    TransportError,
)
from realtime.subscriptions import IncrementalReplay, SubscriptionLedger


class RecordingAdapter(ChannelAdapter):
    """Adapter that records every hook invocation."""

    def __init__(self):
        self.payloads = []
        self.connected_calls = 0
        self.cleanup_calls = 0

    def on_connected(self):
        self.connected_calls += 1

    def on_cleanup(self):
        self.cleanup_calls += 1

    def decode_and_route(self, payload):
        self.payloads.append(payload)


class EventRecorder:
    """Collects the payloads of every lifecycle event."""

    def __init__(self, controller):
        self.events = {event: [] for event in ClientEvent}
        for event in ClientEvent:
            controller.on(event, self.events[event].append)

    @property
    def states(self):
        return [change.state for change in self.events[ClientEvent.STATE_CHANGE]]

    @property
    def errors(self):
        return [event.error for event in self.events[ClientEvent.ERROR]]


def make_controller(config, transport, adapter=None, **kwargs):
    return ConnectionController(config, adapter or RecordingAdapter(), transport=transport, **kwargs)


class TestConnectionConfig:

    def test_default_config(self):
        config = ConnectionConfig(url="wss://test.com/ws")

        assert config.auto_reconnect is True
        assert config.max_reconnect_attempts is None
        assert config.reconnect_base_delay == 1.0
        assert config.max_reconnect_delay == 30.0
        assert config.reconnect_jitter == 1.0
        assert config.heartbeat_interval == 30.0
        assert config.connection_timeout == 10.0

    @pytest.mark.parametrize("overrides", [
        {"url": ""},
        {"max_reconnect_attempts": -1},
        {"reconnect_base_delay": -1.0},
        {"reconnect_jitter": -0.5},
        {"heartbeat_interval": 0},
        {"connection_timeout": 0},
    ])
    def test_invalid_config(self, overrides):
        values = {"url": "wss://test.com/ws"}
        values.update(overrides)
        with pytest.raises(ValueError):
            ConnectionConfig(**values)


class TestConnect:

    @pytest.mark.asyncio
    async def test_initial_state(self, fast_config, transport):
        controller = make_controller(fast_config, transport)

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert not controller.is_connected
        assert controller.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_connect_success(self, fast_config, transport):
        adapter = RecordingAdapter()
        controller = make_controller(fast_config, transport, adapter)
        recorder = EventRecorder(controller)

        handle = await open_client(controller, transport)

        assert controller.is_connected
        assert handle.url == fast_config.url
        assert recorder.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert recorder.events[ClientEvent.CONNECTED] == [None]
        assert adapter.connected_calls == 1
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_state_change_payload(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)

        await open_client(controller, transport)

        first, second = recorder.events[ClientEvent.STATE_CHANGE]
        assert (first.previous_state, first.state) == (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
        assert (second.previous_state, second.state) == (ConnectionState.CONNECTING, ConnectionState.CONNECTED)
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_connect_while_connecting_is_noop(self, fast_config, transport):
        controller = make_controller(fast_config, transport)

        first = asyncio.ensure_future(controller.connect())
        await asyncio.sleep(0)
        second = asyncio.ensure_future(controller.connect())
        await second

        assert len(transport.instances) == 1
        transport.last.simulate_open()
        await first
        assert len(transport.instances) == 1
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_connect_while_connected_is_noop(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)
        await open_client(controller, transport)

        await controller.connect()

        assert len(transport.instances) == 1
        assert len(recorder.events[ClientEvent.STATE_CHANGE]) == 2
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_connection_timeout(self, fast_config, transport):
        """A transport that never opens fails connect() once, within the window."""
        config = dataclasses.replace(fast_config, auto_reconnect=False)
        controller = make_controller(config, transport)
        recorder = EventRecorder(controller)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(ConnectionTimeoutError):
            await controller.connect()

        assert loop.time() - started < 0.5
        await asyncio.sleep(0.05)
        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], ConnectionTimeoutError)
        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert transport.last.closed
        # One disconnected event for the timeout, none for the abandoned transport's late close
        disconnected = recorder.events[ClientEvent.DISCONNECTED]
        assert [(e.code, e.reason) for e in disconnected] == [(1006, "Connection timeout")]

    @pytest.mark.asyncio
    async def test_timeout_reports_error_then_disconnected(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        order = []
        controller.on(ClientEvent.ERROR, lambda event: order.append("error"))
        controller.on(ClientEvent.DISCONNECTED, lambda event: order.append("disconnected"))
        controller.on(ClientEvent.RECONNECTING, lambda event: order.append("reconnecting"))

        with pytest.raises(ConnectionTimeoutError):
            await controller.connect()

        assert order == ["error", "disconnected", "reconnecting"]
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_timeout_schedules_reconnect(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)

        with pytest.raises(ConnectionTimeoutError):
            await controller.connect()

        assert controller.connection_state is ConnectionState.RECONNECTING
        assert recorder.events[ClientEvent.RECONNECTING][0].attempt == 1

        await wait_for(lambda: len(transport.instances) == 2)
        transport.last.simulate_open()
        assert controller.is_connected
        assert controller.reconnect_attempts == 0
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_transport_construction_error(self, fast_config):
        transport = MockTransport(fail_with=OSError("no sockets left"))
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)

        with pytest.raises(TransportConstructionError):
            await controller.connect()

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], TransportConstructionError)
        assert isinstance(recorder.errors[0].__cause__, OSError)

    @pytest.mark.asyncio
    async def test_close_before_open_without_reconnect(self, fast_config, transport):
        config = dataclasses.replace(fast_config, auto_reconnect=False)
        controller = make_controller(config, transport)

        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 1)
        transport.last.simulate_close(1006, "refused")

        with pytest.raises(TransportError):
            await task
        assert controller.connection_state is ConnectionState.DISCONNECTED


class TestReconnection:

    @pytest.mark.asyncio
    async def test_peer_close_reconnects(self, fast_config):
        transport = MockTransport()
        adapter = RecordingAdapter()
        controller = make_controller(fast_config, transport, adapter)
        recorder = EventRecorder(controller)
        await open_client(controller, transport)

        transport.auto_open = True
        transport.last.simulate_close(1006, "network")

        assert controller.connection_state is ConnectionState.RECONNECTING
        await wait_for(lambda: controller.is_connected)

        assert len(transport.instances) == 2
        assert recorder.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
        disconnected = recorder.events[ClientEvent.DISCONNECTED]
        assert [(e.code, e.reason) for e in disconnected] == [(1006, "network")]
        assert recorder.events[ClientEvent.RECONNECTING][0].attempt == 1
        assert recorder.events[ClientEvent.RECONNECTING][0].max_attempts is None
        assert controller.reconnect_attempts == 0
        assert adapter.connected_calls == 2
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_max_retries_exhausted(self, fast_config, transport):
        """Two failed reconnect attempts end in an exhaustion error and disconnected."""
        config = dataclasses.replace(fast_config, max_reconnect_attempts=2)
        controller = make_controller(config, transport)
        recorder = EventRecorder(controller)
        await open_client(controller, transport)

        transport.last.simulate_close(1006, "")
        for expected in (2, 3):
            await wait_for(lambda: len(transport.instances) == expected)
            transport.last.simulate_close(1006, "")

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert [e.attempt for e in recorder.events[ClientEvent.RECONNECTING]] == [1, 2]
        assert all(e.max_attempts == 2 for e in recorder.events[ClientEvent.RECONNECTING])
        exhausted = [e for e in recorder.errors if isinstance(e, MaxRetriesExhaustedError)]
        assert len(exhausted) == 1
        assert exhausted[0].attempts == 2
        # No skipped or duplicated transitions across the failed attempts
        assert recorder.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
        ]

        await asyncio.sleep(0.1)
        assert len(transport.instances) == 3

    @pytest.mark.asyncio
    async def test_auto_reconnect_disabled(self, fast_config, transport):
        config = dataclasses.replace(fast_config, auto_reconnect=False)
        controller = make_controller(config, transport)
        recorder = EventRecorder(controller)
        await open_client(controller, transport)

        transport.last.simulate_close(1006, "")
        await asyncio.sleep(0.05)

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert recorder.events[ClientEvent.RECONNECTING] == []
        assert len(transport.instances) == 1

    @pytest.mark.asyncio
    async def test_connect_during_reconnect_delay_skips_wait(self, fast_config, transport):
        config = dataclasses.replace(fast_config, reconnect_base_delay=10.0, max_reconnect_delay=10.0)
        controller = make_controller(config, transport)
        await open_client(controller, transport)
        transport.last.simulate_close(1006, "")
        assert controller.connection_state is ConnectionState.RECONNECTING

        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 2)
        transport.last.simulate_open()
        await task

        assert controller.is_connected
        assert controller.reconnect_attempts == 0
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_joined_caller(self, fast_config, transport):
        """Two callers share one reconnect attempt; cancelling the first spares the second."""
        config = dataclasses.replace(fast_config, reconnect_base_delay=10.0, max_reconnect_delay=10.0)
        controller = make_controller(config, transport)
        await open_client(controller, transport)
        transport.last.simulate_close(1006, "")

        first = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 2)
        second = asyncio.ensure_future(controller.connect())
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        transport.last.simulate_open()

        results = await asyncio.gather(first, second, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert results[1] is None
        assert controller.is_connected
        assert len(transport.instances) == 2
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_cancelled_sole_caller_leaves_attempt_running(self, fast_config, transport):
        controller = make_controller(fast_config, transport)

        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 1)
        task.cancel()
        await asyncio.sleep(0)

        transport.last.simulate_open()
        assert task.cancelled()
        assert controller.is_connected
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_stale_callbacks_from_old_transport_ignored(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)
        first = await open_client(controller, transport)

        transport.auto_open = True
        first.simulate_close(1006, "")
        await wait_for(lambda: controller.is_connected)

        # Late events from the first socket must not affect the second
        first.callbacks.on_close(1006, "late")
        first.callbacks.on_message("late")

        assert controller.is_connected
        assert len(recorder.events[ClientEvent.DISCONNECTED]) == 1
        assert recorder.events[ClientEvent.RAW_MESSAGE] == []
        controller.disconnect()


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_intentional_disconnect_never_reconnects(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)
        handle = await open_client(controller, transport)

        controller.disconnect()
        await asyncio.sleep(fast_config.reconnect_base_delay * 10)

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert len(transport.instances) == 1
        assert recorder.events[ClientEvent.RECONNECTING] == []
        assert (handle.close_code, handle.close_reason) == (1000, "Client disconnect")
        disconnected = recorder.events[ClientEvent.DISCONNECTED]
        assert [(e.code, e.reason) for e in disconnected] == [(1000, "Client disconnect")]

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, fast_config, transport):
        adapter = RecordingAdapter()
        controller = make_controller(fast_config, transport, adapter)
        recorder = EventRecorder(controller)
        await open_client(controller, transport)

        controller.disconnect()
        controller.disconnect()

        assert recorder.states.count(ConnectionState.DISCONNECTED) == 1
        assert adapter.cleanup_calls == 2

    @pytest.mark.asyncio
    async def test_disconnect_when_never_connected(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)

        controller.disconnect()

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert recorder.events[ClientEvent.STATE_CHANGE] == []
        assert transport.instances == []

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)

        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 1)
        handle = transport.last
        controller.disconnect()

        with pytest.raises(ConnectionClosedByClientError):
            await task

        # An open that races the disconnect is ignored
        handle.callbacks.on_open()
        await asyncio.sleep(fast_config.connection_timeout * 2)

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert recorder.events[ClientEvent.CONNECTED] == []
        assert recorder.errors == []
        assert len(transport.instances) == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_reconnect_delay(self, fast_config, transport):
        config = dataclasses.replace(fast_config, reconnect_base_delay=0.05)
        controller = make_controller(config, transport)
        await open_client(controller, transport)

        transport.last.simulate_close(1006, "")
        assert controller.connection_state is ConnectionState.RECONNECTING
        controller.disconnect()
        await asyncio.sleep(0.15)

        assert controller.connection_state is ConnectionState.DISCONNECTED
        assert len(transport.instances) == 1
        assert controller.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect_starts_fresh_cycle(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        await open_client(controller, transport)
        controller.disconnect()

        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 2)
        transport.last.simulate_open()
        await task

        assert controller.is_connected
        controller.disconnect()


class TestSendAndReceive:

    @pytest.mark.asyncio
    async def test_send_while_disconnected(self, fast_config, transport):
        controller = make_controller(fast_config, transport)

        with pytest.raises(NotConnectedError):
            controller.send("hello")

        assert transport.instances == []

    @pytest.mark.asyncio
    async def test_send_while_connecting(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        task = asyncio.ensure_future(controller.connect())
        await wait_for(lambda: len(transport.instances) == 1)

        with pytest.raises(NotConnectedError):
            controller.send("hello")

        assert transport.last.sent == []
        controller.disconnect()
        with pytest.raises(ConnectionClosedByClientError):
            await task

    @pytest.mark.asyncio
    async def test_send_serializes_payloads(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        handle = await open_client(controller, transport)

        controller.send("hello")
        controller.send({"type": "PING"})

        assert handle.sent == ["hello", '{"type": "PING"}']
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_inbound_json_is_decoded(self, fast_config, transport):
        adapter = RecordingAdapter()
        controller = make_controller(fast_config, transport, adapter)
        recorder = EventRecorder(controller)
        handle = await open_client(controller, transport)

        handle.simulate_message({"event_type": "book"})

        assert adapter.payloads == [{"event_type": "book"}]
        assert recorder.events[ClientEvent.RAW_MESSAGE][0].text == '{"event_type": "book"}'
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_inbound_non_json_is_forwarded_raw(self, fast_config, transport):
        adapter = RecordingAdapter()
        controller = make_controller(fast_config, transport, adapter)
        handle = await open_client(controller, transport)

        handle.simulate_message("PONG")

        assert adapter.payloads == ["PONG"]
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_adapter_failure_is_reported(self, fast_config, transport):
        reporter = MagicMock()
        adapter = RecordingAdapter()
        adapter.decode_and_route = MagicMock(side_effect=KeyError("payload"))
        controller = make_controller(fast_config, transport, adapter, error_reporter=reporter)
        handle = await open_client(controller, transport)

        handle.simulate_message({"x": 1})

        reporter.report_error.assert_called_once()
        assert controller.is_connected
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_transport_error_does_not_change_state(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        recorder = EventRecorder(controller)
        handle = await open_client(controller, transport)

        handle.simulate_error(ConnectionResetError("reset"))

        assert controller.is_connected
        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], TransportError)
        assert isinstance(recorder.events[ClientEvent.ERROR][0], ErrorEvent)
        assert "reset" in recorder.events[ClientEvent.ERROR][0].message
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_break_controller(self, fast_config, transport):
        controller = make_controller(fast_config, transport)

        def broken(_):
            raise RuntimeError("listener failure")

        controller.on("connected", broken)
        await open_client(controller, transport)

        assert controller.is_connected
        controller.disconnect()


class TestHeartbeatIntegration:

    @pytest.mark.asyncio
    async def test_ping_sent_while_connected(self, fast_config, transport):
        config = dataclasses.replace(fast_config, heartbeat_interval=0.01)
        controller = make_controller(config, transport)
        handle = await open_client(controller, transport)

        await wait_for(lambda: "ping" in handle.sent)
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_heartbeat_stops_on_close(self, fast_config, transport):
        config = dataclasses.replace(fast_config, heartbeat_interval=0.01, auto_reconnect=False)
        controller = make_controller(config, transport)
        handle = await open_client(controller, transport)
        assert controller.heartbeat.is_running

        handle.simulate_close(1006, "")
        await asyncio.sleep(0)

        assert not controller.heartbeat.is_running


class TestReplayOrdering:

    @pytest.mark.asyncio
    async def test_replay_precedes_connected_event(self, fast_config, transport):
        """Subscriptions added before the first connect go out in one replay message."""
        controller = make_controller(fast_config, transport)
        ledger = SubscriptionLedger(
            IncrementalReplay(
                build_subscribe=lambda entries: {"subscribe": [e.key for e in entries]},
                build_unsubscribe=lambda entries: {"unsubscribe": [e.key for e in entries]},
            ),
            controller,
        )
        controller.attach_ledger(ledger)
        ledger.add("alpha")
        ledger.add("beta")

        seen_at_connected = []
        controller.on("connected", lambda _: seen_at_connected.extend(transport.last.sent_messages))

        handle = await open_client(controller, transport)

        assert handle.sent_messages == [{"subscribe": ["alpha", "beta"]}]
        assert seen_at_connected == [{"subscribe": ["alpha", "beta"]}]
        controller.disconnect()

    @pytest.mark.asyncio
    async def test_replay_after_reconnect_is_exact(self, fast_config, transport):
        controller = make_controller(fast_config, transport)
        ledger = SubscriptionLedger(
            IncrementalReplay(
                build_subscribe=lambda entries: {"subscribe": sorted(e.key for e in entries)},
                build_unsubscribe=lambda entries: {"unsubscribe": sorted(e.key for e in entries)},
            ),
            controller,
        )
        controller.attach_ledger(ledger)
        first = await open_client(controller, transport)

        ledger.add_many({"a": None, "b": None, "c": None})
        ledger.remove("b")
        transport.auto_open = True
        first.simulate_close(1006, "")
        await wait_for(lambda: controller.is_connected)

        assert transport.last.sent_messages == [{"subscribe": ["a", "c"]}]
        controller.disconnect()
