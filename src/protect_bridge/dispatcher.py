"""Routes decoded realtime updates and polled motion events to devices.

Motion and ring transitions are de-duplicated by timestamp: a transition
fires only when its timestamp is strictly newer than the one the device
last saw, so replays, out-of-order delivery and overlap between the
realtime stream and the motion poll never fire twice. The first timestamp
a device ever sees only seeds its baseline.
"""

from __future__ import annotations

from typing import Any

from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.constants import ACTION_UPDATE, MODEL_KEY_CAMERA
from protect_bridge.errors import DeviceNotFoundError
from protect_bridge.models import MotionEvent, UpdatePacket
from protect_bridge.registry import DeviceLookup, DeviceProxy


# Payload keys applied unconditionally, mapped to the proxy method.
_LEVEL_FIELDS: dict[str, str] = {
    'isRecording': 'on_is_recording',
    'isMicEnabled': 'on_is_mic_enabled',
    'micVolume': 'on_mic_volume',
    'isDark': 'on_is_dark',
    'isConnected': 'on_is_connected',
}


class EventDispatcher:
    """Applies camera updates to the device proxies of a registry.

    Attributes:
        last_motion_at: Newest motion timestamp seen on any camera, used
            as the lower bound of the next motion poll.
    """

    def __init__(self, devices: DeviceLookup) -> None:
        """Initialize the dispatcher.

        Args:
            devices: Registry resolving external ids to device proxies.
        """
        self._devices = devices
        self.last_motion_at: int | None = None

    def _lookup(self, device_id: str | None) -> DeviceProxy | None:
        device = self._devices.lookup_device_by_id(device_id) if device_id else None
        if device is None:
            error = DeviceNotFoundError(device_id or '<missing>')
            logger.debug(f'Dropping update: {error.message}')
        return device

    def _note_motion(self, timestamp: int) -> None:
        if self.last_motion_at is None or timestamp > self.last_motion_at:
            self.last_motion_at = timestamp

    def handle_packet(self, packet: UpdatePacket) -> bool:
        """Apply one decoded realtime update.

        Args:
            packet: The decoded update packet.

        Returns:
            True if the packet reached a device proxy.
        """
        action = packet.action
        if action.action != ACTION_UPDATE or action.model_key != MODEL_KEY_CAMERA:
            return False

        changes = packet.changes
        if not changes:
            return False

        device = self._lookup(action.id)
        if device is None:
            return False

        logger.trace(f'Camera update for {device.id}: {changes}')
        self._apply_levels(device, changes)

        if changes.get('lastMotion'):
            self.apply_motion(
                device,
                int(changes['lastMotion']),
                bool(changes.get('isMotionDetected')),
            )
        if changes.get('lastRing'):
            self.apply_ring(device, int(changes['lastRing']))
        return True

    def _apply_levels(self, device: DeviceProxy, changes: dict[str, Any]) -> None:
        for key, method in _LEVEL_FIELDS.items():
            if key in changes and changes[key] is not None:
                getattr(device, method)(changes[key])

        recording_settings = changes.get('recordingSettings')
        if isinstance(recording_settings, dict) and recording_settings.get('mode'):
            device.on_recording_mode(recording_settings['mode'])

    def apply_motion(
        self,
        device: DeviceProxy,
        timestamp: int,
        detected: bool,
        score: int | None = None,
        thumbnail: str | None = None,
        heatmap: str | None = None,
    ) -> bool:
        """Run a motion transition if ``timestamp`` is newer than the last one.

        Args:
            device: Target proxy.
            timestamp: Motion timestamp in epoch milliseconds.
            detected: True for motion start, False for motion end.
            score: Motion score, for starts.
            thumbnail: Thumbnail id, for starts.
            heatmap: Heatmap id, for starts.

        Returns:
            True if a transition fired.
        """
        self._note_motion(timestamp)
        last = device.last_motion_at
        if last is None:
            device.last_motion_at = timestamp
            logger.debug(f'Seeded motion baseline of {device.id} at {timestamp}')
            return False
        if timestamp <= last:
            return False

        device.last_motion_at = timestamp
        if detected:
            device.on_motion_start(timestamp, score=score, thumbnail=thumbnail, heatmap=heatmap)
        else:
            device.on_motion_end(timestamp)
        return True

    def apply_ring(self, device: DeviceProxy, timestamp: int) -> bool:
        """Fire a ring if ``timestamp`` is newer than the last ring.

        Returns:
            True if the ring fired.
        """
        last = device.last_ring_at
        if last is not None and timestamp <= last:
            return False
        device.last_ring_at = timestamp
        if last is None:
            logger.debug(f'Seeded ring baseline of {device.id} at {timestamp}')
            return False
        device.on_doorbell_ringing(timestamp)
        return True

    def handle_motion_event(self, event: MotionEvent) -> bool:
        """Apply one motion event returned by the events endpoint.

        A newer ``start`` starts motion; otherwise a newer ``end`` ends it.

        Args:
            event: The polled motion event.

        Returns:
            True if a transition fired.
        """
        device = self._lookup(event.camera)
        if device is None:
            return False

        if device.last_motion_at is None:
            baseline = max(t for t in (event.start, event.end, 0) if t is not None)
            if baseline:
                self._note_motion(baseline)
                device.last_motion_at = baseline
                logger.debug(f'Seeded motion baseline of {device.id} at {baseline}')
            return False

        if event.start is not None and event.start > device.last_motion_at:
            return self.apply_motion(
                device,
                event.start,
                True,
                score=event.score,
                thumbnail=event.thumbnail,
                heatmap=event.heatmap,
            )
        if event.end is not None and event.end > device.last_motion_at:
            return self.apply_motion(device, event.end, False)
        return False
