"""Unit tests for the realtime update listener.

Tests cover:
- Connection preconditions and URL construction
- Message handling and cursor advancement
- Heartbeat expiry terminating the socket
- Keepalive pings and their failure handling
- Serialized reconnect scheduling
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from aiohttp import WSMsgType

from protect_bridge.config import ProtectConfig
from protect_bridge.events import StatusEvent, StatusEventBus, StatusEventKind
from protect_bridge.models import ActionFrame, Session
from protect_bridge.protocol import encode_update_packet
from protect_bridge.realtime import ListenerState, RealtimeListener


class FakeWebSocket:
    """Websocket stand-in whose iteration blocks until messages are queued."""

    def __init__(self, messages: list[Any] | None = None) -> None:
        self.closed = False
        self.close_calls = 0
        self.close_gate: asyncio.Event | None = None
        self.ping = AsyncMock()
        self.pong = AsyncMock()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        for message in messages or []:
            self._queue.put_nowait(message)

    def feed(self, message: Any) -> None:
        self._queue.put_nowait(message)

    async def close(self) -> bool:
        self.close_calls += 1
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.closed = True
        return True

    def exception(self) -> BaseException | None:
        return None

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> Any:
        message = await self._queue.get()
        if message is None:
            raise StopAsyncIteration
        return message


def _binary(data: bytes) -> SimpleNamespace:
    return SimpleNamespace(type=WSMsgType.BINARY, data=data)


@pytest.fixture
def config() -> ProtectConfig:
    """Create a config with long liveness intervals."""
    return ProtectConfig(host='nvr.local', heartbeat_interval=30, keepalive_interval=30)


@pytest.fixture
def session() -> MagicMock:
    """Create a mock session manager holding a cursor and a cookie."""
    manager = MagicMock()
    manager.session = Session(host='nvr.local', port=443, cookie_token='TOKEN=tok1')
    manager.last_update_id = 'u-1'
    return manager


@pytest.fixture
def dispatcher() -> MagicMock:
    """Create a mock dispatcher."""
    return MagicMock()


@pytest.fixture
def bus() -> StatusEventBus:
    """Create a status event bus."""
    return StatusEventBus()


@pytest.fixture
def listener(
    config: ProtectConfig, session: MagicMock, dispatcher: MagicMock, bus: StatusEventBus
) -> RealtimeListener:
    """Create a realtime listener over mocks."""
    return RealtimeListener(config, session, dispatcher, bus)


async def _connect(listener: RealtimeListener, ws: FakeWebSocket) -> None:
    with patch.object(aiohttp.ClientSession, 'ws_connect', new=AsyncMock(return_value=ws)):
        assert await listener.connect() is True


class TestConnect:
    """Test suite for opening the update stream."""

    def test_build_url_default_port(self, listener: RealtimeListener) -> None:
        """Test that port 443 is left out of the URL."""
        assert listener.build_url('u-1') == (
            'wss://nvr.local/proxy/protect/ws/updates?lastUpdateId=u-1'
        )

    def test_build_url_custom_port(self, listener: RealtimeListener, session: MagicMock) -> None:
        """Test that other ports are kept."""
        session.session = Session(host='nvr.local', port=7443, cookie_token='t')

        assert listener.build_url('u-9').startswith('wss://nvr.local:7443/')

    @pytest.mark.asyncio
    async def test_no_cursor_no_connect(
        self, listener: RealtimeListener, session: MagicMock
    ) -> None:
        """Test that the listener never connects before a bootstrap."""
        session.last_update_id = None

        assert await listener.connect() is False
        assert listener.state == ListenerState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_no_cookie_no_connect(
        self, listener: RealtimeListener, session: MagicMock
    ) -> None:
        """Test that the listener needs a session cookie."""
        session.session = Session(host='nvr.local')

        assert await listener.connect() is False

    @pytest.mark.asyncio
    async def test_connect_sends_cookie(self, listener: RealtimeListener) -> None:
        """Test the websocket handshake arguments."""
        ws = FakeWebSocket()
        ws_connect = AsyncMock(return_value=ws)

        with patch.object(aiohttp.ClientSession, 'ws_connect', new=ws_connect):
            assert await listener.connect() is True

        assert listener.is_connected is True
        url = ws_connect.call_args.args[0]
        assert url.endswith('lastUpdateId=u-1')
        assert ws_connect.call_args.kwargs['headers'] == {'Cookie': 'TOKEN=tok1'}
        assert ws_connect.call_args.kwargs['ssl'] is False
        await listener.stop()

    @pytest.mark.asyncio
    async def test_connect_failure_publishes_error(
        self, listener: RealtimeListener, bus: StatusEventBus
    ) -> None:
        """Test that a failed handshake reports a connection error."""
        events: list[StatusEvent] = []
        bus.subscribe(events.append, kinds=[StatusEventKind.CONNECTION_ERROR])

        with patch.object(
            aiohttp.ClientSession,
            'ws_connect',
            new=AsyncMock(side_effect=aiohttp.ClientError('refused')),
        ):
            assert await listener.connect() is False

        assert listener.state == ListenerState.DISCONNECTED
        assert len(events) == 1
        assert 'realtime update events API' in str(events[0].error)
        await listener.stop()


class TestMessages:
    """Test suite for inbound message handling."""

    def test_message_dispatched_and_cursor_advanced(
        self, listener: RealtimeListener, dispatcher: MagicMock, session: MagicMock
    ) -> None:
        """Test that a decoded packet reaches the dispatcher first."""
        data = encode_update_packet(
            ActionFrame(action='update', id='cam-1', model_key='camera', new_update_id='u-2'),
            {'isDark': True},
        )

        listener._handle_message(data)

        packet = dispatcher.handle_packet.call_args.args[0]
        assert packet.changes == {'isDark': True}
        session.advance_cursor.assert_called_once_with('u-2')
        assert listener.messages_received == 1

    def test_malformed_message_dropped(
        self, listener: RealtimeListener, dispatcher: MagicMock, session: MagicMock
    ) -> None:
        """Test that undecodable messages are counted and skipped."""
        listener._handle_message(b'\x01\x01')

        dispatcher.handle_packet.assert_not_called()
        session.advance_cursor.assert_not_called()
        assert listener.packets_dropped == 1

    def test_dispatch_error_still_advances_cursor(
        self, listener: RealtimeListener, dispatcher: MagicMock, session: MagicMock
    ) -> None:
        """Test that a failing device update does not stall the stream."""
        dispatcher.handle_packet.side_effect = RuntimeError('boom')
        data = encode_update_packet(
            {'action': 'update', 'id': 'cam-1', 'modelKey': 'camera', 'newUpdateId': 'u-3'},
            {'isDark': False},
        )

        listener._handle_message(data)

        session.advance_cursor.assert_called_once_with('u-3')

    @pytest.mark.asyncio
    async def test_receive_loop_processes_messages(
        self, listener: RealtimeListener, dispatcher: MagicMock
    ) -> None:
        """Test that binary messages from the socket are dispatched."""
        ws = FakeWebSocket()
        with patch.object(listener, '_reconnect', new=AsyncMock()):
            await _connect(listener, ws)
            ws.feed(
                _binary(
                    encode_update_packet(
                        {'action': 'update', 'id': 'cam-1', 'modelKey': 'camera'},
                        {'micVolume': 10},
                    )
                )
            )
            await asyncio.sleep(0.01)

            dispatcher.handle_packet.assert_called_once()
            await listener.stop()


class TestLiveness:
    """Test suite for heartbeat expiry and reconnects."""

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_terminates(
        self, config: ProtectConfig, listener: RealtimeListener, bus: StatusEventBus
    ) -> None:
        """Test that silence terminates the socket and schedules one reconnect."""
        config.heartbeat_interval = 0.05
        closed: list[StatusEvent] = []
        bus.subscribe(closed.append, kinds=[StatusEventKind.CONNECTION_CLOSED])
        ws = FakeWebSocket()

        with patch.object(listener, '_reconnect', new=AsyncMock()) as reconnect:
            await _connect(listener, ws)
            await asyncio.sleep(0.15)

            assert ws.close_calls == 1
            assert listener.state == ListenerState.DISCONNECTED
            assert reconnect.call_count == 1
            assert len(closed) == 1
            assert 'Heartbeat timeout' in str(closed[0].error)
            await listener.stop()

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_does_not_wait_for_close(
        self, config: ProtectConfig, listener: RealtimeListener
    ) -> None:
        """Test that a hung close does not hold up the reconnect."""
        config.heartbeat_interval = 0.05
        ws = FakeWebSocket()
        ws.close_gate = asyncio.Event()

        with patch.object(listener, '_reconnect', new=AsyncMock()) as reconnect:
            await _connect(listener, ws)
            await asyncio.sleep(0.15)

            assert ws.close_calls == 1
            assert ws.closed is False
            assert listener.state == ListenerState.DISCONNECTED
            assert reconnect.call_count == 1

            ws.close_gate.set()
            await listener.stop()

        assert ws.closed is True

    @pytest.mark.asyncio
    async def test_keepalive_pings_repeatedly(
        self, config: ProtectConfig, listener: RealtimeListener
    ) -> None:
        """Test that pings go out on every keepalive interval."""
        config.keepalive_interval = 0.05
        ws = FakeWebSocket()

        with patch.object(listener, '_reconnect', new=AsyncMock()):
            await _connect(listener, ws)
            await asyncio.sleep(0.18)

            assert ws.ping.await_count >= 2
            assert listener.is_connected is True
            await listener.stop()

    @pytest.mark.asyncio
    async def test_failed_ping_ends_keepalive(
        self, config: ProtectConfig, listener: RealtimeListener
    ) -> None:
        """Test that a failing ping stops the keepalive loop without raising."""
        config.keepalive_interval = 0.02
        ws = FakeWebSocket()
        ws.ping.side_effect = aiohttp.ClientError('gone')

        with patch.object(listener, '_reconnect', new=AsyncMock()):
            await _connect(listener, ws)
            keepalive = listener._keepalive_task
            await asyncio.sleep(0.1)

            assert keepalive is not None
            assert keepalive.done()
            assert keepalive.exception() is None
            assert ws.ping.await_count == 1
            await listener.stop()

    @pytest.mark.asyncio
    async def test_traffic_resets_heartbeat(
        self, config: ProtectConfig, listener: RealtimeListener
    ) -> None:
        """Test that inbound pings keep the socket alive and get a pong."""
        config.heartbeat_interval = 0.1
        ws = FakeWebSocket()

        with patch.object(listener, '_reconnect', new=AsyncMock()):
            await _connect(listener, ws)
            for _ in range(4):
                await asyncio.sleep(0.05)
                ws.feed(SimpleNamespace(type=WSMsgType.PING, data=b''))
            await asyncio.sleep(0.01)

            assert listener.is_connected is True
            assert ws.pong.await_count == 4
            await listener.stop()

    @pytest.mark.asyncio
    async def test_close_and_error_reconnect_once(self, listener: RealtimeListener) -> None:
        """Test that close and error for the same socket coalesce."""
        ws = FakeWebSocket()

        with patch.object(listener, '_reconnect', new=AsyncMock()) as reconnect:
            await _connect(listener, ws)
            listener._handle_disconnect(ws, None)  # type: ignore[arg-type]
            listener._handle_disconnect(ws, RuntimeError('reset'))  # type: ignore[arg-type]
            await asyncio.sleep(0.01)

            assert reconnect.call_count == 1
            await listener.stop()

    @pytest.mark.asyncio
    async def test_server_close_reconnects(self, listener: RealtimeListener) -> None:
        """Test that the end of the stream schedules a reconnect."""
        ws = FakeWebSocket()

        with patch.object(listener, '_reconnect', new=AsyncMock()) as reconnect:
            await _connect(listener, ws)
            ws.feed(None)
            await asyncio.sleep(0.01)

            assert listener.state == ListenerState.DISCONNECTED
            assert reconnect.call_count == 1
            await listener.stop()

    @pytest.mark.asyncio
    async def test_pending_reconnect_coalesces(self, listener: RealtimeListener) -> None:
        """Test that scheduling while a reconnect is pending is a no-op."""
        with patch.object(listener, '_reconnect', new=AsyncMock()) as reconnect:
            listener._schedule_reconnect()
            listener._schedule_reconnect()
            await asyncio.sleep(0)

            assert reconnect.call_count == 1
            await listener.stop()

    @pytest.mark.asyncio
    async def test_request_reconnect_replaces_pending(
        self, listener: RealtimeListener, session: MagicMock
    ) -> None:
        """Test that a new bootstrap cancels the reconnect in flight."""
        session.last_update_id = None
        listener.request_reconnect()
        first = listener._reconnect_task
        await asyncio.sleep(0.01)

        listener.request_reconnect()
        await asyncio.sleep(0.01)

        assert first is not None and first.cancelled()
        assert listener.reconnect_pending is True
        await listener.stop()
        assert listener.reconnect_pending is False

    @pytest.mark.asyncio
    async def test_reconnect_connects_with_cursor(
        self, config: ProtectConfig, listener: RealtimeListener
    ) -> None:
        """Test that a reconnect opens a new socket once a cursor exists."""
        config.reconnect_delay = 0
        ws = FakeWebSocket()

        with patch.object(aiohttp.ClientSession, 'ws_connect', new=AsyncMock(return_value=ws)):
            listener.request_reconnect()
            await asyncio.sleep(0.01)

        assert listener.is_connected is True
        await listener.stop()
        assert ws.close_calls == 1
