"""Protocol and endpoint constants for UniFi Protect."""

from __future__ import annotations

from typing import Final


API_PATH: Final = '/proxy/protect/api'
LOGIN_PATH: Final = '/api/auth/login'
WS_UPDATES_PATH: Final = '/proxy/protect/ws/updates'

# Realtime update frames: 8-byte header followed by the frame body.
UPDATE_PACKET_HEADER_SIZE: Final = 8

MODEL_KEY_CAMERA: Final = 'camera'
ACTION_UPDATE: Final = 'update'

DOORBELL_TYPE_MARKER: Final = 'Doorbell'

# Settings store keys shared with the host application.
SETTING_NVR_IP: Final = 'ufp:nvrip'
SETTING_NVR_PORT: Final = 'ufp:nvrport'
SETTING_CREDENTIALS: Final = 'ufp:credentials'

# Flow trigger names fired into the host application.
TRIGGER_MOTION_STARTED: Final = 'ufv_motion_started'
TRIGGER_MOTION_ENDED: Final = 'ufv_motion_ended'
TRIGGER_DOORBELL_RINGING: Final = 'ufv_doorbell_ringing'
TRIGGER_CONNECTION_CHANGED: Final = 'ufp_connection_changed'
TRIGGER_SNAPSHOT_CREATED: Final = 'ufv_snapshot_created'
