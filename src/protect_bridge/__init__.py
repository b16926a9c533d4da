"""UniFi Protect bridge for smart-home host applications.

This package logs into a UniFi Protect NVR, follows its realtime update
stream and forwards camera state into a host application's devices and
flow triggers. It includes:

- Authenticated REST client with transparent cookie rotation
- Session lifecycle with bootstrap and periodic refresh
- Codec for the binary realtime update protocol
- Websocket listener with heartbeat and guarded reconnect
- Dispatcher applying motion, ring and state updates to device proxies

Example:
    >>> from protect_bridge import ProtectConfig, ProtectAPI
    >>>
    >>> config = ProtectConfig.from_env()
    >>> async with ProtectAPI(config) as api:
    ...     for camera in await api.get_cameras():
    ...         print(f"{camera.name}: {camera.is_connected}")
"""

from protect_bridge.api import ProtectAPI, create_api
from protect_bridge.app import ProtectApp
from protect_bridge.config import ProtectConfig
from protect_bridge.devices import CameraDevice, NvrDevice
from protect_bridge.dispatcher import EventDispatcher
from protect_bridge.errors import (
    ConnectionError,
    DeviceNotFoundError,
    HttpStatusError,
    InvalidCredentialsError,
    InvalidHostError,
    MalformedFrameError,
    NotAuthenticatedError,
    ProtectClientError,
)
from protect_bridge.events import (
    SessionStatus,
    StatusEvent,
    StatusEventBus,
    StatusEventKind,
)
from protect_bridge.log import configure_logging
from protect_bridge.models import (
    NVR,
    ActionFrame,
    Bootstrap,
    Camera,
    Channel,
    FrameType,
    MotionEvent,
    PayloadFormat,
    PayloadFrame,
    Session,
    UpdatePacket,
)
from protect_bridge.protocol import (
    decode_update_frame,
    decode_update_packet,
    encode_update_frame,
    encode_update_packet,
)
from protect_bridge.realtime import ListenerState, RealtimeListener
from protect_bridge.registry import (
    DeviceLookup,
    DeviceProxy,
    DeviceRegistry,
    InMemorySettingsStore,
    InMemoryTriggerSink,
    SettingsStore,
    TriggerSink,
)
from protect_bridge.session import SessionManager, SessionState
from protect_bridge.webclient import WebClient


__all__ = [
    # API
    'ProtectAPI',
    'ProtectApp',
    'create_api',
    # Config
    'ProtectConfig',
    'configure_logging',
    # Components
    'WebClient',
    'SessionManager',
    'SessionState',
    'RealtimeListener',
    'ListenerState',
    'EventDispatcher',
    # Errors
    'ProtectClientError',
    'ConnectionError',
    'DeviceNotFoundError',
    'HttpStatusError',
    'InvalidCredentialsError',
    'InvalidHostError',
    'MalformedFrameError',
    'NotAuthenticatedError',
    # Events
    'SessionStatus',
    'StatusEvent',
    'StatusEventBus',
    'StatusEventKind',
    # Models
    'NVR',
    'ActionFrame',
    'Bootstrap',
    'Camera',
    'Channel',
    'FrameType',
    'MotionEvent',
    'PayloadFormat',
    'PayloadFrame',
    'Session',
    'UpdatePacket',
    # Protocol
    'decode_update_frame',
    'decode_update_packet',
    'encode_update_frame',
    'encode_update_packet',
    # Devices and collaborators
    'CameraDevice',
    'NvrDevice',
    'DeviceLookup',
    'DeviceProxy',
    'DeviceRegistry',
    'InMemorySettingsStore',
    'InMemoryTriggerSink',
    'SettingsStore',
    'TriggerSink',
]
