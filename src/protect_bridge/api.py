"""Async façade over the UniFi Protect NVR.

``ProtectAPI`` composes the web client, session manager, realtime listener
and event dispatcher, and exposes the domain operations device proxies
and the application need. Build one per NVR and pass it explicitly to
whatever needs it.

Example:
    >>> from protect_bridge import ProtectAPI, ProtectConfig
    >>>
    >>> config = ProtectConfig.from_env()
    >>> async with ProtectAPI(config, devices=registry) as api:
    ...     for camera in await api.get_cameras():
    ...         print(camera.name, await api.get_stream_url(camera.id))
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, time as dt_time
from types import TracebackType
from typing import Any

from loguru import logger  # type: ignore[import-untyped]
from pydantic import ValidationError

from protect_bridge.config import ProtectConfig
from protect_bridge.dispatcher import EventDispatcher
from protect_bridge.errors import ProtectClientError
from protect_bridge.events import StatusEvent, StatusEventBus, StatusEventKind
from protect_bridge.models import NVR, Bootstrap, Camera, MotionEvent, Session
from protect_bridge.realtime import RealtimeListener
from protect_bridge.registry import DeviceLookup, DeviceRegistry
from protect_bridge.session import SessionManager
from protect_bridge.webclient import WebClient


_DOORBELL_RATIO = (4, 3)
_DEFAULT_RATIO = (16, 9)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _today_window() -> tuple[int, int]:
    """Get local start and end of today in epoch milliseconds."""
    today = datetime.now().astimezone()
    start = datetime.combine(today.date(), dt_time.min, tzinfo=today.tzinfo)
    end = datetime.combine(today.date(), dt_time.max, tzinfo=today.tzinfo)
    return _epoch_ms(start), _epoch_ms(end)


class ProtectAPI:
    """Single coordination point for one NVR.

    Attributes:
        config: Connection configuration.
        bus: Status event bus shared by all components.
        webclient: Authenticated REST client.
        session: Login, bootstrap and refresh orchestration.
        dispatcher: Routes updates to device proxies.
        listener: Realtime update stream client.
    """

    def __init__(
        self,
        config: ProtectConfig,
        devices: DeviceLookup | None = None,
        bus: StatusEventBus | None = None,
    ) -> None:
        """Initialize the façade.

        Args:
            config: Connection configuration.
            devices: Registry of paired device proxies. An empty in-memory
                registry is used when None.
            bus: Status event bus. A private bus is created when None.
        """
        self.config = config
        self.bus = bus or StatusEventBus()
        self.webclient = WebClient(config)
        self.session = SessionManager(config, self.webclient, self.bus)
        self.dispatcher = EventDispatcher(devices if devices is not None else DeviceRegistry())
        self.listener = RealtimeListener(config, self.session, self.dispatcher, self.bus)
        self.session.on_bootstrap = self.listener.request_reconnect

    # -------------------------------------------------------------------------
    # Session state
    # -------------------------------------------------------------------------

    @property
    def bootstrap(self) -> Bootstrap | None:
        """Get a read-only copy of the last bootstrap."""
        return self.session.bootstrap

    @property
    def last_update_id(self) -> str | None:
        return self.session.last_update_id

    @property
    def nvr_name(self) -> str | None:
        """Get the NVR label: name, then host, then id."""
        bootstrap = self.session.bootstrap
        if bootstrap is None:
            return None
        return bootstrap.nvr.display_name

    @property
    def is_connected(self) -> bool:
        """Check whether the session is live and the update stream is open."""
        return self.session.is_logged_in and self.listener.is_connected

    async def login(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> Session:
        """Log in to the NVR.

        Arguments left as None fall back to the configuration.

        Returns:
            The new live session.

        Raises:
            InvalidHostError: If no host is known.
            InvalidCredentialsError: If credentials are missing or rejected.
            ConnectionError: If the NVR cannot be reached.
        """
        if username is None and self.config.username is not None:
            username = self.config.username
        if password is None and self.config.password is not None:
            password = self.config.password.get_secret_value()
        return await self.session.login(
            host or self.config.host, port or self.config.port, username, password
        )

    async def get_bootstrap_info(self) -> Bootstrap:
        """Fetch the bootstrap; the update stream reconnects from its cursor."""
        return await self.session.get_bootstrap_info()

    # -------------------------------------------------------------------------
    # REST resources
    # -------------------------------------------------------------------------

    async def _get_json(
        self, resource: str, what: str, params: dict[str, Any] | None = None
    ) -> Any:
        response = await self.webclient.get(resource, params)
        try:
            result = json.loads(response) if response else None
        except json.JSONDecodeError as e:
            raise ProtectClientError(f'Error obtaining {what}: {e}', original_error=e) from e
        if result is None:
            raise ProtectClientError(f'Error obtaining {what}.')
        return result

    async def get_access_key(self) -> str:
        """Request a fresh access key and use it for later GET requests.

        Returns:
            The access key.
        """
        response = await self.webclient.post('auth/access-key')
        try:
            access_key = json.loads(response).get('accessKey') if response else None
        except (json.JSONDecodeError, AttributeError) as e:
            raise ProtectClientError(f'Error obtaining access-key: {e}', original_error=e) from e
        if not access_key:
            raise ProtectClientError('Error obtaining access-key.')
        self.webclient.api_key = access_key
        return access_key

    async def get_debug_info(self) -> dict[str, Any]:
        """Get the NVR's debug information."""
        return await self._get_json('debug/info', 'debug info')

    async def get_server(self) -> NVR:
        """Get the NVR descriptor, including storage usage.

        The descriptor is also published as an ``NVR_SERVER`` status event.
        """
        raw = await self._get_json('nvr', 'server')
        try:
            nvr = NVR.model_validate(raw)
        except ValidationError as e:
            raise ProtectClientError(f'Error obtaining server: {e}', original_error=e) from e
        self.bus.publish(StatusEvent(kind=StatusEventKind.NVR_SERVER, data={'nvr': nvr}))
        return nvr

    async def get_cameras(self) -> list[Camera]:
        """List all cameras adopted by the NVR."""
        raw = await self._get_json('cameras', 'cameras')
        try:
            return [Camera.model_validate(item) for item in raw]
        except (ValidationError, TypeError) as e:
            raise ProtectClientError(f'Error obtaining cameras: {e}', original_error=e) from e

    async def find_camera_by_id(self, camera_id: str) -> Camera:
        """Get the current server-side state of one camera."""
        raw = await self._get_json(f'cameras/{camera_id}', 'camera')
        try:
            return Camera.model_validate(raw)
        except ValidationError as e:
            raise ProtectClientError(f'Error obtaining camera: {e}', original_error=e) from e

    def get_aspect_ratio_height(self, camera_id: str, width: int) -> int:
        """Get the snapshot height matching a camera's aspect ratio.

        Doorbells use 4:3, every other camera 16:9. Cameras missing from
        the bootstrap fall back to 16:9.

        Args:
            camera_id: Camera id.
            width: Snapshot width in pixels.

        Returns:
            The height in pixels.
        """
        ratio = _DEFAULT_RATIO
        bootstrap = self.session.bootstrap
        camera = bootstrap.get_camera(camera_id) if bootstrap is not None else None
        if camera is not None and camera.is_doorbell:
            ratio = _DOORBELL_RATIO
        return round(width * ratio[1] / ratio[0])

    def _snapshot_params(self, camera_id: str, width: int | None) -> dict[str, Any]:
        if not camera_id:
            raise ProtectClientError('Invalid camera identifier.')
        width = width or self.config.snapshot_width
        return {
            'w': width,
            'h': self.get_aspect_ratio_height(camera_id, width),
            'force': 'true',
            'ts': int(time.time() * 1000),
        }

    async def snapshot(self, camera_id: str, width: int | None = None) -> bytes:
        """Download a JPEG snapshot.

        Args:
            camera_id: Camera id.
            width: Width in pixels; the configured default when None.

        Returns:
            The JPEG bytes.
        """
        params = self._snapshot_params(camera_id, width)
        logger.debug(f'Fetching {params["w"]}x{params["h"]} snapshot of {camera_id}')
        return await self.webclient.download(f'cameras/{camera_id}/snapshot', params)

    def create_snapshot_url(self, camera_id: str, width: int | None = None) -> str:
        """Build a pre-signed snapshot URL that needs no session cookie.

        Raises:
            InvalidHostError: If no host is set.
            ProtectClientError: If the camera id is empty.
        """
        params = self._snapshot_params(camera_id, width)
        if self.webclient.api_key:
            params = {'accessKey': self.webclient.api_key, **params}
        return self.webclient.build_url(f'cameras/{camera_id}/snapshot', params)

    async def get_stream_url(self, camera_id: str) -> str:
        """Get the RTSP URL of the camera's last RTSP-enabled channel.

        Returns:
            The URL, or an empty string when no channel has RTSP enabled.
        """
        camera = await self.find_camera_by_id(camera_id)
        alias = camera.rtsp_alias
        if not alias:
            return ''
        return f'rtsp://{self.webclient.server_host}:{self.session.rtsp_port}/{alias}'

    async def set_recording_mode(self, camera_id: str, mode: str = 'never') -> None:
        """Change a camera's recording mode, keeping its other settings.

        Args:
            camera_id: Camera id.
            mode: Recording mode, e.g. ``always``, ``motion`` or ``never``.
        """
        camera = await self.find_camera_by_id(camera_id)
        settings = camera.recording_settings.model_dump(by_alias=True)
        settings['mode'] = mode
        await self.webclient.patch(f'cameras/{camera_id}', {'recordingSettings': settings})
        logger.info(f'Recording mode of {camera.name or camera_id} set to {mode}')

    async def set_mic_volume(self, camera_id: str, volume: int = 100) -> None:
        """Change a camera's microphone volume.

        Raises:
            ValueError: If ``volume`` is outside 0-100.
        """
        if not 0 <= volume <= 100:
            raise ValueError(f'Mic volume must be between 0 and 100, got {volume}')
        await self.webclient.patch(f'cameras/{camera_id}', {'micVolume': volume})
        logger.info(f'Mic volume of {camera_id} set to {volume}')

    async def get_motion_events(self, since: int | None = None) -> list[MotionEvent]:
        """List today's motion events, newer than the last seen one.

        Args:
            since: Lower bound in epoch milliseconds; the newest motion the
                dispatcher has seen when None.

        Returns:
            The motion events in the window.
        """
        start, end = _today_window()
        since = since if since is not None else self.dispatcher.last_motion_at
        if since is not None and since > start:
            start = since
        raw = await self._get_json(
            'events', 'motion events', {'start': start, 'end': end, 'type': 'motion'}
        )
        try:
            return [MotionEvent.model_validate(item) for item in raw]
        except (ValidationError, TypeError) as e:
            raise ProtectClientError(
                f'Error obtaining motion events: {e}', original_error=e
            ) from e

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Log in with configured credentials and start background work.

        Without configured credentials only the background loops start;
        call ``login`` and ``get_bootstrap_info`` later.
        """
        await self.listener.start()
        if self.config.has_credentials:
            await self.login()
            await self.get_bootstrap_info()
        self.session.start_refresh()

    async def close(self) -> None:
        """Stop background work and release connections."""
        await self.session.close()
        await self.listener.stop()
        await self.webclient.close()
        logger.info('Disconnected from Protect NVR')

    async def __aenter__(self) -> ProtectAPI:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


@asynccontextmanager
async def create_api(
    config: ProtectConfig, devices: DeviceLookup | None = None
) -> AsyncIterator[ProtectAPI]:
    """Create a started ``ProtectAPI`` and close it on exit.

    Example:
        >>> async with create_api(config) as api:
        ...     print(api.nvr_name)
    """
    api = ProtectAPI(config, devices=devices)
    try:
        await api.start()
        yield api
    finally:
        await api.close()
