"""Unit tests for the typed status event bus."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from protect_bridge.events import (
    SessionStatus,
    StatusEvent,
    StatusEventBus,
    StatusEventKind,
)


class TestStatusEventBus:
    """Test suite for StatusEventBus subscription management."""

    def test_subscribe_all_kinds(self) -> None:
        """Test that a subscription without kinds receives everything."""
        bus = StatusEventBus()
        callback = MagicMock()
        bus.subscribe(callback)

        bus.publish(StatusEvent(kind=StatusEventKind.SESSION_STATUS, status=SessionStatus.CONNECTED))
        bus.publish(StatusEvent(kind=StatusEventKind.CONNECTION_CLOSED))

        assert callback.call_count == 2

    def test_subscribe_filters_by_kind(self) -> None:
        """Test that kind filters are honoured."""
        bus = StatusEventBus()
        callback = MagicMock()
        bus.subscribe(callback, kinds=[StatusEventKind.CONNECTION_ERROR])

        bus.publish(StatusEvent(kind=StatusEventKind.SESSION_STATUS))
        bus.publish(StatusEvent(kind=StatusEventKind.CONNECTION_ERROR, error=RuntimeError('x')))

        callback.assert_called_once()
        assert callback.call_args.args[0].kind == StatusEventKind.CONNECTION_ERROR

    def test_unsubscribe(self) -> None:
        """Test that the returned function removes the subscription."""
        bus = StatusEventBus()
        callback = MagicMock()
        unsub = bus.subscribe(callback)
        assert bus.subscription_count == 1

        unsub()
        unsub()
        bus.publish(StatusEvent(kind=StatusEventKind.SESSION_STATUS))

        assert bus.subscription_count == 0
        callback.assert_not_called()

    def test_failing_callback_does_not_stop_delivery(self) -> None:
        """Test that one broken subscriber does not affect the others."""
        bus = StatusEventBus()
        broken = MagicMock(side_effect=RuntimeError('boom'))
        healthy = MagicMock()
        bus.subscribe(broken)
        bus.subscribe(healthy)

        bus.publish(StatusEvent(kind=StatusEventKind.LISTENER_STATE, state='connected'))

        healthy.assert_called_once()

    def test_clear(self) -> None:
        """Test removing all subscriptions."""
        bus = StatusEventBus()
        bus.subscribe(MagicMock())
        bus.subscribe(MagicMock())

        bus.clear()

        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_async_callback_scheduled(self) -> None:
        """Test that coroutine callbacks run as tasks."""
        bus = StatusEventBus()
        received: list[StatusEvent] = []

        async def on_event(event: StatusEvent) -> None:
            received.append(event)

        bus.subscribe(on_event)
        bus.publish(StatusEvent(kind=StatusEventKind.BOOTSTRAP_LOADED))
        await asyncio.sleep(0)

        assert len(received) == 1
        assert received[0].kind == StatusEventKind.BOOTSTRAP_LOADED


class TestStatusEvent:
    """Test suite for StatusEvent defaults."""

    def test_defaults(self) -> None:
        """Test that optional fields default to empty values."""
        event = StatusEvent(kind=StatusEventKind.NVR_SERVER)

        assert event.status is None
        assert event.error is None
        assert event.data == {}
        assert event.timestamp.tzinfo is not None

    def test_data_not_shared(self) -> None:
        """Test that each event gets its own data dict."""
        first = StatusEvent(kind=StatusEventKind.NVR_SERVER)
        second = StatusEvent(kind=StatusEventKind.NVR_SERVER)

        first.data['nvr'] = 'x'

        assert second.data == {}

    def test_session_status_values(self) -> None:
        """Test the user-facing status labels."""
        assert SessionStatus.CONNECTING.value == 'Connecting'
        assert SessionStatus.CONNECTED.value == 'Connected'
        assert SessionStatus.DISCONNECTED.value == 'Disconnected'
