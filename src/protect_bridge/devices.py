"""Device proxies standing in for paired NVR devices.

``CameraDevice`` receives dispatched realtime and polled updates and fires
the matching flow triggers. ``NvrDevice`` tracks the recorder's disk usage.
Both hold only last-known state; the NVR stays the source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.constants import (
    DOORBELL_TYPE_MARKER,
    TRIGGER_CONNECTION_CHANGED,
    TRIGGER_DOORBELL_RINGING,
    TRIGGER_MOTION_ENDED,
    TRIGGER_MOTION_STARTED,
)
from protect_bridge.models import NVR, Camera
from protect_bridge.registry import TriggerSink


_GIB = 1024**3


@dataclass
class CameraDevice:
    """Host-side proxy for one camera.

    Timestamps are NVR epoch milliseconds. ``last_motion_at`` and
    ``last_ring_at`` are maintained by the dispatcher, which only calls
    the ``on_*`` transitions for strictly newer timestamps.

    Attributes:
        id: External camera id.
        name: Display name.
        triggers: Sink receiving the flow triggers of this camera.
        type: Camera model type, e.g. ``UVC G4 Doorbell``.
        alarm_motion: Whether motion is currently active.
    """

    id: str
    name: str
    triggers: TriggerSink
    type: str | None = None
    alarm_motion: bool = False
    last_motion_at: int | None = None
    last_ring_at: int | None = None
    last_motion_score: int | None = None
    last_motion_thumbnail: str | None = None
    last_motion_heatmap: str | None = None
    is_recording: bool | None = None
    is_mic_enabled: bool | None = None
    mic_volume: int | None = None
    recording_mode: str | None = None
    is_dark: bool | None = None
    is_connected: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_camera(cls, camera: Camera, triggers: TriggerSink) -> CameraDevice:
        """Create a proxy seeded from a bootstrap camera.

        Motion and ring baselines are seeded too, so events that happened
        before pairing never fire.
        """
        return cls(
            id=camera.id,
            name=camera.name or camera.id,
            triggers=triggers,
            type=camera.type,
            last_motion_at=camera.last_motion,
            last_ring_at=camera.last_ring,
            is_recording=camera.is_recording,
            is_mic_enabled=camera.is_mic_enabled,
            mic_volume=camera.mic_volume,
            recording_mode=camera.recording_settings.mode,
            is_dark=camera.is_dark,
            is_connected=camera.is_connected,
        )

    @property
    def is_doorbell(self) -> bool:
        return DOORBELL_TYPE_MARKER in (self.type or '')

    def _fire(self, name: str, **payload: Any) -> None:
        self.triggers.fire_trigger(
            name, {'camera': self.name, 'camera_id': self.id, **payload}
        )

    def on_motion_start(
        self,
        timestamp: int,
        score: int | None = None,
        thumbnail: str | None = None,
        heatmap: str | None = None,
    ) -> None:
        logger.info(f'Motion started on {self.name} at {timestamp}')
        self.alarm_motion = True
        self.last_motion_score = score
        self.last_motion_thumbnail = thumbnail
        self.last_motion_heatmap = heatmap
        self._fire(
            TRIGGER_MOTION_STARTED,
            timestamp=timestamp,
            score=score,
            thumbnail=thumbnail,
            heatmap=heatmap,
        )

    def on_motion_end(self, timestamp: int) -> None:
        logger.info(f'Motion ended on {self.name} at {timestamp}')
        self.alarm_motion = False
        self._fire(TRIGGER_MOTION_ENDED, timestamp=timestamp)

    def on_doorbell_ringing(self, timestamp: int) -> None:
        logger.info(f'Doorbell {self.name} ringing at {timestamp}')
        self._fire(TRIGGER_DOORBELL_RINGING, timestamp=timestamp)

    def on_is_recording(self, value: bool) -> None:
        self.is_recording = value

    def on_is_mic_enabled(self, value: bool) -> None:
        self.is_mic_enabled = value

    def on_mic_volume(self, value: int) -> None:
        self.mic_volume = value

    def on_recording_mode(self, mode: str) -> None:
        self.recording_mode = mode

    def on_is_dark(self, value: bool) -> None:
        self.is_dark = value

    def on_is_connected(self, value: bool) -> None:
        """Apply the connection status, firing a trigger when it flips.

        The first known value only seeds the state.
        """
        previous = self.is_connected
        self.is_connected = value
        if previous is not None and previous != value:
            logger.info(f'Camera {self.name} {"connected" if value else "disconnected"}')
            self._fire(TRIGGER_CONNECTION_CHANGED, connected=value)


@dataclass
class NvrDevice:
    """Host-side proxy for the NVR itself."""

    id: str
    name: str
    disk_used_percent: int | None = None
    disk_size_gb: int | None = None
    disk_used_gb: int | None = None

    def on_server(self, nvr: NVR) -> None:
        """Update disk statistics from an NVR descriptor.

        Args:
            nvr: Descriptor as returned by ``GET nvr``.
        """
        storage = nvr.storage_info
        if storage is None:
            logger.debug(f'NVR {self.name} reported no storage info')
            return
        if storage.total_size:
            self.disk_used_percent = round(storage.total_space_used * 100 / storage.total_size)
        self.disk_size_gb = round(storage.total_size / _GIB)
        self.disk_used_gb = round(storage.total_space_used / _GIB)
        logger.debug(
            f'NVR {self.name} disk: {self.disk_used_gb}/{self.disk_size_gb} GB '
            f'({self.disk_used_percent}%)'
        )
