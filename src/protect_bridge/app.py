"""Application wiring for the Protect bridge.

``ProtectApp`` is the composition root: it builds the API façade around the
host's device registry, settings store and trigger sink, and runs the
background work around it:

    * login from settings at start and whenever the credentials change;
    * a motion poll over the events endpoint, alongside the realtime stream;
    * a login retry after connection errors and closed streams;
    * a periodic NVR disk usage refresh.

Example:
    >>> settings = InMemorySettingsStore({
    ...     'ufp:nvrip': '192.168.1.1',
    ...     'ufp:credentials': {'username': 'admin', 'password': 'secret'},
    ... })
    >>> app = ProtectApp(ProtectConfig(host='192.168.1.1'), settings, InMemoryTriggerSink())
    >>> async with app:
    ...     await app.take_snapshot('camera-123')
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from types import TracebackType
from typing import Any

from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.api import ProtectAPI
from protect_bridge.config import ProtectConfig
from protect_bridge.constants import TRIGGER_SNAPSHOT_CREATED
from protect_bridge.devices import CameraDevice, NvrDevice
from protect_bridge.errors import InvalidCredentialsError, ProtectClientError
from protect_bridge.events import StatusEvent, StatusEventBus, StatusEventKind
from protect_bridge.log import configure_logging
from protect_bridge.registry import DeviceRegistry, SettingsStore, TriggerSink


NVR_REFRESH_INTERVAL = 300.0


class ProtectApp:
    """Runs the bridge between one NVR and the host application.

    Attributes:
        config: Connection configuration.
        settings: Host settings store holding NVR address and credentials.
        triggers: Host trigger sink.
        devices: Registry of paired camera proxies.
        nvr_device: Proxy for the NVR itself, if paired.
        api: The NVR façade.
    """

    def __init__(
        self,
        config: ProtectConfig,
        settings: SettingsStore,
        triggers: TriggerSink,
        devices: DeviceRegistry[CameraDevice] | None = None,
        nvr_device: NvrDevice | None = None,
        bus: StatusEventBus | None = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Connection configuration.
            settings: Host settings store.
            triggers: Host trigger sink.
            devices: Registry of camera proxies; empty when None.
            nvr_device: Proxy for the NVR, if paired.
            bus: Status event bus; a private one when None.
        """
        if config.debug:
            configure_logging(debug=True)

        self.config = config
        self.settings = settings
        self.triggers = triggers
        self.devices: DeviceRegistry[CameraDevice] = (
            devices if devices is not None else DeviceRegistry()
        )
        self.nvr_device = nvr_device
        self.api = ProtectAPI(config, devices=self.devices, bus=bus)
        self._motion_task: asyncio.Task[None] | None = None
        self._nvr_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Subscribe to status events, start background loops and log in."""
        if self._running:
            return
        self._running = True

        bus = self.api.bus
        self._unsubscribers.append(
            bus.subscribe(
                self._on_connection_problem,
                kinds=[StatusEventKind.CONNECTION_ERROR, StatusEventKind.CONNECTION_CLOSED],
            )
        )
        self._unsubscribers.append(
            bus.subscribe(self._on_bootstrap_loaded, kinds=[StatusEventKind.BOOTSTRAP_LOADED])
        )
        self._unsubscribers.append(
            bus.subscribe(self._on_nvr_server, kinds=[StatusEventKind.NVR_SERVER])
        )
        self._unsubscribers.append(self.api.session.watch_settings(self.settings))

        await self.api.listener.start()
        self.api.session.start_refresh()
        if self.nvr_device is not None:
            self._nvr_task = asyncio.create_task(self._nvr_loop())

        await self.login()
        logger.info('UniFi Protect is running.')

    async def stop(self) -> None:
        """Stop background loops and close the NVR connection."""
        self._running = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        for task in (self._motion_task, self._nvr_task, self._retry_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._motion_task = None
        self._nvr_task = None
        self._retry_task = None

        await self.api.close()

    async def login(self) -> bool:
        """Log in and bootstrap with the NVR address and credentials from settings.

        Returns:
            True if the session is live.
        """
        logger.info('Logging in...')
        return await self.api.session.login_from_settings(self.settings)

    # -------------------------------------------------------------------------
    # Status events
    # -------------------------------------------------------------------------

    def _on_bootstrap_loaded(self, event: StatusEvent) -> None:
        logger.info('Bootstrap loaded.')
        self.register_cameras()
        if self._running and (self._motion_task is None or self._motion_task.done()):
            self._motion_task = asyncio.create_task(self._motion_loop())

    def _on_nvr_server(self, event: StatusEvent) -> None:
        nvr = event.data.get('nvr')
        if self.nvr_device is not None and nvr is not None:
            self.nvr_device.on_server(nvr)

    def _on_connection_problem(self, event: StatusEvent) -> None:
        if not self._running:
            return
        if isinstance(event.error, InvalidCredentialsError):
            logger.warning('Credentials rejected, waiting for new credentials')
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        if event.kind == StatusEventKind.CONNECTION_CLOSED:
            logger.info(f'Connection closed, retrying in {self.config.retry_delay:.0f}s...')
        else:
            logger.info(
                f'Connection error: {event.error}, retrying in {self.config.retry_delay:.0f}s...'
            )
        self._retry_task = asyncio.create_task(self._retry_login())

    async def _retry_login(self) -> None:
        await asyncio.sleep(self.config.retry_delay)
        if self.api.is_connected:
            logger.debug('Connection restored, skipping login retry')
            return
        await self.login()

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def check_motion(self) -> int:
        """Poll today's motion events and dispatch them.

        Returns:
            Number of transitions fired.
        """
        try:
            events = await self.api.get_motion_events()
        except ProtectClientError as e:
            logger.warning(f'Motion poll failed: {e.message}')
            return 0
        fired = 0
        for event in events:
            if self.api.dispatcher.handle_motion_event(event):
                fired += 1
        return fired

    async def _motion_loop(self) -> None:
        await self.check_motion()
        while True:
            await asyncio.sleep(self.config.motion_poll_interval)
            if self.api.session.is_logged_in:
                await self.check_motion()

    async def refresh_nvr(self) -> None:
        """Refresh the NVR disk usage."""
        try:
            await self.api.get_server()
        except ProtectClientError as e:
            logger.warning(f'NVR refresh failed: {e.message}')

    async def _nvr_loop(self) -> None:
        while True:
            await asyncio.sleep(NVR_REFRESH_INTERVAL)
            if self.api.session.is_logged_in:
                await self.refresh_nvr()

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def register_cameras(self) -> list[CameraDevice]:
        """Create proxies for bootstrap cameras missing from the registry.

        Returns:
            The newly registered proxies.
        """
        bootstrap = self.api.bootstrap
        if bootstrap is None:
            return []
        added = []
        for camera in bootstrap.cameras:
            if camera.id not in self.devices:
                device = CameraDevice.from_camera(camera, self.triggers)
                self.devices.add(device)
                added.append(device)
        if added:
            logger.info(f'Registered {len(added)} new cameras')
        return added

    async def take_snapshot(self, camera_id: str, width: int | None = None) -> bytes:
        """Download a snapshot and fire the snapshot trigger.

        Args:
            camera_id: Camera id.
            width: Width in pixels; the configured default when None.

        Returns:
            The JPEG bytes.
        """
        image = await self.api.snapshot(camera_id, width)
        snapshot_url = self.api.create_snapshot_url(camera_id, width)
        stream_url = await self.api.get_stream_url(camera_id)

        device = self.devices.lookup_device_by_id(camera_id)
        payload: dict[str, Any] = {
            'camera': device.name if device is not None else camera_id,
            'camera_id': camera_id,
            'snapshot': image,
            'snapshot_url': snapshot_url,
            'stream_url': stream_url,
        }
        self.triggers.fire_trigger(TRIGGER_SNAPSHOT_CREATED, payload)
        return image

    async def __aenter__(self) -> ProtectApp:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
