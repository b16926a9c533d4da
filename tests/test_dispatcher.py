"""Unit tests for the update dispatcher.

Tests cover:
- Filtering on action and model key
- Timestamp de-duplication of motion and ring transitions
- Level-triggered camera fields
- Polled motion events
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from protect_bridge.devices import CameraDevice
from protect_bridge.dispatcher import EventDispatcher
from protect_bridge.models import ActionFrame, MotionEvent, PayloadFormat, PayloadFrame, UpdatePacket
from protect_bridge.registry import DeviceRegistry


def _packet(
    changes: dict[str, Any] | str,
    device_id: str = 'cam-1',
    action: str = 'update',
    model_key: str = 'camera',
) -> UpdatePacket:
    payload_format = PayloadFormat.JSON if isinstance(changes, dict) else PayloadFormat.UTF8
    return UpdatePacket(
        action=ActionFrame(action=action, id=device_id, model_key=model_key),
        payload=PayloadFrame(payload_format, changes),
    )


@pytest.fixture
def camera() -> MagicMock:
    """Create a mock device proxy with a motion baseline of 500."""
    device = MagicMock(spec=CameraDevice)
    device.id = 'cam-1'
    device.name = 'Porch'
    device.last_motion_at = 500
    device.last_ring_at = 100
    device.is_connected = True
    return device


@pytest.fixture
def dispatcher(camera: MagicMock) -> EventDispatcher:
    """Create a dispatcher over a registry holding the mock camera."""
    registry: DeviceRegistry[Any] = DeviceRegistry()
    registry.add(camera)
    return EventDispatcher(registry)


class TestFiltering:
    """Test suite for packet filtering."""

    def test_non_update_action_dropped(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that only update actions are dispatched."""
        assert dispatcher.handle_packet(_packet({'isDark': True}, action='add')) is False
        camera.on_is_dark.assert_not_called()

    def test_non_camera_model_dropped(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that updates for other models are dropped."""
        assert dispatcher.handle_packet(_packet({'isDark': True}, model_key='nvr')) is False
        camera.on_is_dark.assert_not_called()

    def test_unknown_device_dropped(self, dispatcher: EventDispatcher) -> None:
        """Test that updates for unpaired cameras are dropped without error."""
        assert dispatcher.handle_packet(_packet({'isDark': True}, device_id='other')) is False

    def test_non_json_payload_dropped(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that text payloads carry no changes."""
        assert dispatcher.handle_packet(_packet('hello')) is False


class TestMotion:
    """Test suite for motion de-duplication."""

    def test_newer_motion_starts(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that a newer detected motion fires a start at its timestamp."""
        dispatcher.handle_packet(_packet({'lastMotion': 1000, 'isMotionDetected': True}))

        camera.on_motion_start.assert_called_once()
        assert camera.on_motion_start.call_args.args[0] == 1000
        assert camera.last_motion_at == 1000

    def test_duplicate_motion_ignored(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that replaying the same frame fires no second transition."""
        packet = _packet({'lastMotion': 1000, 'isMotionDetected': True})

        dispatcher.handle_packet(packet)
        dispatcher.handle_packet(packet)

        camera.on_motion_start.assert_called_once()

    @pytest.mark.parametrize('timestamp', [500, 499, 1])
    def test_stale_motion_ignored(
        self, dispatcher: EventDispatcher, camera: MagicMock, timestamp: int
    ) -> None:
        """Test that timestamps at or below the baseline never transition."""
        dispatcher.handle_packet(_packet({'lastMotion': timestamp, 'isMotionDetected': True}))

        camera.on_motion_start.assert_not_called()
        camera.on_motion_end.assert_not_called()
        assert camera.last_motion_at == 500

    def test_newer_motion_without_detection_ends(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that a newer timestamp without detection ends motion."""
        dispatcher.handle_packet(_packet({'lastMotion': 1200, 'isMotionDetected': False}))

        camera.on_motion_end.assert_called_once_with(1200)
        camera.on_motion_start.assert_not_called()

    def test_first_motion_seeds_baseline(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that the first timestamp ever seen fires nothing."""
        camera.last_motion_at = None

        dispatcher.handle_packet(_packet({'lastMotion': 1000, 'isMotionDetected': True}))

        camera.on_motion_start.assert_not_called()
        assert camera.last_motion_at == 1000

    def test_dispatcher_tracks_newest_motion(self, dispatcher: EventDispatcher) -> None:
        """Test the newest-motion watermark used by the motion poll."""
        dispatcher.handle_packet(_packet({'lastMotion': 1000, 'isMotionDetected': True}))
        dispatcher.handle_packet(_packet({'lastMotion': 800, 'isMotionDetected': True}))

        assert dispatcher.last_motion_at == 1000


class TestRing:
    """Test suite for doorbell rings."""

    def test_newer_ring_fires(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that a newer ring fires once."""
        dispatcher.handle_packet(_packet({'lastRing': 200}))
        dispatcher.handle_packet(_packet({'lastRing': 200}))

        camera.on_doorbell_ringing.assert_called_once_with(200)

    def test_first_ring_seeds_baseline(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that the first ring timestamp fires nothing."""
        camera.last_ring_at = None

        dispatcher.handle_packet(_packet({'lastRing': 200}))

        camera.on_doorbell_ringing.assert_not_called()
        assert camera.last_ring_at == 200


class TestLevelFields:
    """Test suite for unconditionally applied fields."""

    def test_level_fields_applied(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that each level field reaches its proxy method."""
        dispatcher.handle_packet(
            _packet(
                {
                    'isRecording': True,
                    'isMicEnabled': False,
                    'micVolume': 80,
                    'isDark': True,
                    'isConnected': False,
                    'recordingSettings': {'mode': 'motion'},
                }
            )
        )

        camera.on_is_recording.assert_called_once_with(True)
        camera.on_is_mic_enabled.assert_called_once_with(False)
        camera.on_mic_volume.assert_called_once_with(80)
        camera.on_is_dark.assert_called_once_with(True)
        camera.on_is_connected.assert_called_once_with(False)
        camera.on_recording_mode.assert_called_once_with('motion')

    def test_level_fields_repeat(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that level fields apply on every update, even unchanged."""
        dispatcher.handle_packet(_packet({'isRecording': True}))
        dispatcher.handle_packet(_packet({'isRecording': True}))

        assert camera.on_is_recording.call_count == 2


class TestPolledMotion:
    """Test suite for motion events from the events endpoint."""

    def test_newer_start(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that a newer start fires with score and thumbnails."""
        event = MotionEvent(
            camera='cam-1', start=900, end=None, score=70, thumbnail='t-1', heatmap='h-1'
        )

        assert dispatcher.handle_motion_event(event) is True

        camera.on_motion_start.assert_called_once_with(
            900, score=70, thumbnail='t-1', heatmap='h-1'
        )

    def test_newer_end(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that an old start with a newer end ends motion."""
        camera.last_motion_at = 900
        event = MotionEvent(camera='cam-1', start=900, end=1500)

        assert dispatcher.handle_motion_event(event) is True

        camera.on_motion_end.assert_called_once_with(1500)
        assert camera.last_motion_at == 1500

    def test_realtime_then_poll_fires_once(
        self, dispatcher: EventDispatcher, camera: MagicMock
    ) -> None:
        """Test that the same motion seen on both paths starts only once."""
        dispatcher.handle_packet(_packet({'lastMotion': 1000, 'isMotionDetected': True}))

        assert dispatcher.handle_motion_event(MotionEvent(camera='cam-1', start=1000)) is False

        camera.on_motion_start.assert_called_once()

    def test_first_event_seeds(self, dispatcher: EventDispatcher, camera: MagicMock) -> None:
        """Test that the first polled event seeds the newest timestamp."""
        camera.last_motion_at = None

        assert dispatcher.handle_motion_event(
            MotionEvent(camera='cam-1', start=900, end=1500)
        ) is False

        assert camera.last_motion_at == 1500
        camera.on_motion_start.assert_not_called()

    def test_unknown_camera(self, dispatcher: EventDispatcher) -> None:
        """Test that events for unpaired cameras are dropped."""
        assert dispatcher.handle_motion_event(MotionEvent(camera='other', start=1)) is False
