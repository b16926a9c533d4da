"""Data models for the Protect bridge.

Pydantic models mirror the camelCase JSON served by the NVR REST API.
Runtime-only values (the live session, decoded realtime frames) are
dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Annotated, Any

from pydantic import BaseModel, Field

from protect_bridge.constants import DOORBELL_TYPE_MARKER


# =============================================================================
# Session
# =============================================================================


@dataclass
class Session:
    """Identity of the live NVR session.

    Exactly one session is live per API facade. A login replaces it
    wholesale with the next ``generation``; responses only rotate the
    cookie of the generation they were issued under.

    Attributes:
        host: NVR hostname or IP address.
        port: NVR HTTPS port.
        cookie_token: Value of the last ``set-cookie`` header.
        api_key: Access key from the bootstrap, sent on GET requests.
        csrf_token: Last ``x-csrf-token`` seen, sent on write requests.
        created_at: When the session was established.
        generation: Monotonic login counter.
    """

    host: str | None = None
    port: int = 443
    cookie_token: str | None = None
    api_key: str | None = None
    csrf_token: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    generation: int = 0

    @property
    def is_authenticated(self) -> bool:
        """Check whether a session cookie is held."""
        return bool(self.cookie_token)


# =============================================================================
# REST resources
# =============================================================================


class NVRPorts(BaseModel):
    """Service ports advertised by the NVR."""

    rtsp: int | None = None
    rtsps: int | None = None
    http: int | None = None
    https: int | None = None

    model_config = {'populate_by_name': True}


class StorageInfo(BaseModel):
    """Disk usage reported by the NVR."""

    total_size: Annotated[int, Field(ge=0, alias='totalSize')] = 0
    total_space_used: Annotated[int, Field(ge=0, alias='totalSpaceUsed')] = 0

    model_config = {'populate_by_name': True}


class NVR(BaseModel):
    """The network video recorder descriptor."""

    id: str | None = None
    name: str | None = None
    host: str | None = None
    ports: NVRPorts = Field(default_factory=NVRPorts)
    storage_info: Annotated[StorageInfo | None, Field(alias='storageInfo')] = None

    model_config = {'populate_by_name': True}

    @property
    def display_name(self) -> str | None:
        """Get the best available label: name, then host, then id."""
        return self.name or self.host or self.id


class Channel(BaseModel):
    """One video channel of a camera."""

    id: int | None = None
    name: str | None = None
    width: int | None = None
    height: int | None = None
    is_rtsp_enabled: Annotated[bool, Field(alias='isRtspEnabled')] = False
    rtsp_alias: Annotated[str | None, Field(alias='rtspAlias')] = None

    model_config = {'populate_by_name': True}


class RecordingSettings(BaseModel):
    """Recording settings of a camera.

    Unknown keys are preserved so a PATCH sends the block back intact.
    """

    mode: str | None = None

    model_config = {'populate_by_name': True, 'extra': 'allow'}


class Camera(BaseModel):
    """Last known server-side state of one camera.

    May lag behind the NVR between polls and realtime events.
    """

    id: str
    name: str | None = None
    type: str | None = None
    channels: list[Channel] = Field(default_factory=list)
    recording_settings: RecordingSettings = Field(
        default_factory=RecordingSettings, alias='recordingSettings'
    )
    is_recording: Annotated[bool, Field(alias='isRecording')] = False
    is_mic_enabled: Annotated[bool, Field(alias='isMicEnabled')] = False
    mic_volume: Annotated[int | None, Field(alias='micVolume')] = None
    is_connected: Annotated[bool, Field(alias='isConnected')] = False
    is_dark: Annotated[bool, Field(alias='isDark')] = False
    last_motion: Annotated[int | None, Field(alias='lastMotion')] = None
    last_ring: Annotated[int | None, Field(alias='lastRing')] = None

    model_config = {'populate_by_name': True}

    @property
    def is_doorbell(self) -> bool:
        """Check whether this camera is a doorbell model."""
        return DOORBELL_TYPE_MARKER in (self.type or '')

    @property
    def rtsp_alias(self) -> str | None:
        """Get the alias of the last RTSP-enabled channel, if any."""
        alias = None
        for channel in self.channels:
            if channel.is_rtsp_enabled:
                alias = channel.rtsp_alias
        return alias


class Bootstrap(BaseModel):
    """Full state snapshot fetched after login.

    ``last_update_id`` is the resume cursor of the realtime stream.
    """

    nvr: NVR = Field(default_factory=NVR)
    last_update_id: Annotated[str | None, Field(alias='lastUpdateId')] = None
    cameras: list[Camera] = Field(default_factory=list)
    access_key: Annotated[str | None, Field(alias='accessKey')] = None

    model_config = {'populate_by_name': True}

    @property
    def rtsp_port(self) -> int | None:
        """Get the RTSP port advertised by the NVR."""
        return self.nvr.ports.rtsp

    def get_camera(self, camera_id: str) -> Camera | None:
        """Get a camera from the snapshot by id."""
        for camera in self.cameras:
            if camera.id == camera_id:
                return camera
        return None


class MotionEvent(BaseModel):
    """A motion event as returned by the events endpoint."""

    id: str | None = None
    type: str = 'motion'
    camera: str
    start: int | None = None
    end: int | None = None
    score: int | None = None
    thumbnail: str | None = None
    heatmap: str | None = None

    model_config = {'populate_by_name': True}


# =============================================================================
# Realtime frames
# =============================================================================


class FrameType(IntEnum):
    """Type tag in byte 0 of a frame header."""

    ACTION = 1
    PAYLOAD = 2


class PayloadFormat(IntEnum):
    """Body format in byte 1 of a frame header."""

    JSON = 1
    UTF8 = 2
    RAW = 3


class ActionFrame(BaseModel):
    """Decoded action frame describing what an update applies to."""

    action: str
    id: str | None = None
    model_key: Annotated[str | None, Field(alias='modelKey')] = None
    new_update_id: Annotated[str | None, Field(alias='newUpdateId')] = None

    model_config = {'populate_by_name': True, 'extra': 'allow'}


@dataclass
class PayloadFrame:
    """Decoded payload frame.

    Attributes:
        format: Body format of the frame.
        data: A dict for JSON, a str for UTF-8 and bytes for raw frames.
    """

    format: PayloadFormat
    data: dict[str, Any] | str | bytes


@dataclass
class UpdatePacket:
    """One action frame paired with one payload frame."""

    action: ActionFrame
    payload: PayloadFrame

    @property
    def changes(self) -> dict[str, Any]:
        """Get the payload as a dict, or an empty dict for non-JSON payloads."""
        if isinstance(self.payload.data, dict):
            return self.payload.data
        return {}
