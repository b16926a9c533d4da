"""Session lifecycle for the UniFi Protect NVR.

The ``SessionManager`` logs in, fetches the bootstrap snapshot and keeps
the session cookie fresh by re-running both on a fixed interval. Every
successful bootstrap asks the realtime listener to reconnect, because the
bootstrap's ``lastUpdateId`` is the resume cursor of the update stream.

State machine::

    LOGGED_OUT -> LOGGING_IN -> LOGGED_IN -> REFRESHING -> LOGGED_IN
         ^______________ any network failure ______________|

A 401 on any REST call moves a live session to EXPIRED. The cookie is
dropped but the credentials are kept, so the next refresh logs in again.
A refresh that fails also leaves the session EXPIRED.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from loguru import logger  # type: ignore[import-untyped]
from pydantic import ValidationError

from protect_bridge.config import ProtectConfig
from protect_bridge.constants import SETTING_CREDENTIALS, SETTING_NVR_IP, SETTING_NVR_PORT
from protect_bridge.errors import (
    ConnectionError,
    HttpStatusError,
    InvalidCredentialsError,
    InvalidHostError,
    NotAuthenticatedError,
    ProtectClientError,
)
from protect_bridge.events import SessionStatus, StatusEvent, StatusEventBus, StatusEventKind
from protect_bridge.models import Bootstrap, Session
from protect_bridge.registry import SettingsStore
from protect_bridge.webclient import WebClient, parse_set_cookie


class SessionState(str, Enum):
    """States of the NVR session."""

    LOGGED_OUT = 'logged_out'
    LOGGING_IN = 'logging_in'
    LOGGED_IN = 'logged_in'
    REFRESHING = 'refreshing'
    EXPIRED = 'expired'


class SessionManager:
    """Orchestrates login, bootstrap and periodic session refresh.

    Attributes:
        state: Current session state.
        bootstrap: Deep copy of the last bootstrap, or None.
        last_update_id: Resume cursor from the last bootstrap.
    """

    def __init__(
        self,
        config: ProtectConfig,
        webclient: WebClient,
        bus: StatusEventBus,
        on_bootstrap: Callable[[], Any] | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Connection configuration.
            webclient: Client whose session this manager controls.
            bus: Status event bus for lifecycle events.
            on_bootstrap: Called once after every successful bootstrap;
                used to reconnect the realtime listener.
        """
        self._config = config
        self._webclient = webclient
        self._bus = bus
        self.on_bootstrap = on_bootstrap
        self._state = SessionState.LOGGED_OUT
        self._bootstrap: Bootstrap | None = None
        self._credentials: tuple[str, str] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._settings_unsub: Callable[[], None] | None = None
        self._login_lock = asyncio.Lock()

        self._webclient.on_unauthorized = self.expire

        if config.has_credentials and config.username and config.password:
            self._credentials = (config.username, config.password.get_secret_value())

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_logged_in(self) -> bool:
        return self._state in (SessionState.LOGGED_IN, SessionState.REFRESHING)

    @property
    def session(self) -> Session:
        return self._webclient.session

    @property
    def bootstrap(self) -> Bootstrap | None:
        """Get a read-only copy of the last bootstrap."""
        if self._bootstrap is None:
            return None
        return self._bootstrap.model_copy(deep=True)

    @property
    def last_update_id(self) -> str | None:
        if self._bootstrap is None:
            return None
        return self._bootstrap.last_update_id

    @property
    def rtsp_port(self) -> int | None:
        if self._bootstrap is None:
            return None
        return self._bootstrap.rtsp_port

    def _set_state(self, state: SessionState) -> None:
        if state != self._state:
            logger.debug(f'Session state {self._state.value} -> {state.value}')
            self._state = state

    def _publish_status(self, status: SessionStatus) -> None:
        self._bus.publish(StatusEvent(kind=StatusEventKind.SESSION_STATUS, status=status))

    def _fail(self, error: Exception) -> None:
        self._set_state(SessionState.LOGGED_OUT)
        self._publish_status(SessionStatus.DISCONNECTED)
        self._bus.publish(StatusEvent(kind=StatusEventKind.CONNECTION_ERROR, error=error))

    def _fail_login(self, error: Exception, host: str, port: int, refreshing: bool) -> None:
        # A failed refresh keeps the old session; it may still be accepted.
        if not refreshing:
            self._webclient.replace_session(Session(host=host, port=port))
        self._fail(error)

    def expire(self) -> None:
        """Mark the session EXPIRED after the NVR rejected its cookie.

        Cached credentials survive, so the next refresh logs in again.
        Subscribers get a CONNECTION_ERROR and may retry sooner.
        """
        if self._state in (SessionState.LOGGED_OUT, SessionState.EXPIRED):
            return
        logger.warning('NVR session expired, logging in again on next refresh')
        self._webclient.invalidate_session()
        self._set_state(SessionState.EXPIRED)
        self._publish_status(SessionStatus.DISCONNECTED)
        self._bus.publish(
            StatusEvent(
                kind=StatusEventKind.CONNECTION_ERROR,
                error=NotAuthenticatedError('Session expired.'),
            )
        )

    async def login(
        self,
        host: str | None,
        port: int | None,
        username: str | None,
        password: str | None,
    ) -> Session:
        """Log in and install a fresh session.

        The current session stays live until the NVR hands out the new
        cookie. A failed first login leaves a cookieless session for the
        requested host; a failed refresh keeps the old one.

        Args:
            host: NVR hostname or IP address.
            port: NVR HTTPS port; the configured port when None.
            username: NVR username.
            password: NVR password.

        Returns:
            The new live session.

        Raises:
            InvalidHostError: If no host is given.
            InvalidCredentialsError: If credentials are missing, rejected,
                or the NVR issues no session cookie.
            HttpStatusError: If the NVR answers with another non-200 status.
            ConnectionError: If the NVR cannot be reached.
        """
        if not host:
            raise InvalidHostError('Invalid host.')
        if not username:
            raise InvalidCredentialsError('Invalid username.')
        if not password:
            raise InvalidCredentialsError('Invalid password.')

        async with self._login_lock:
            refreshing = self._state == SessionState.REFRESHING
            if not refreshing:
                self._set_state(SessionState.LOGGING_IN)
            self._publish_status(SessionStatus.CONNECTING)
            logger.info(f'Logging in to Protect NVR at {host}')

            port = port or self._config.port

            try:
                response = await self._webclient.authenticate(
                    username,
                    password,
                    timeout=self._config.login_timeout,
                    host=host,
                    port=port,
                )
            except HttpStatusError as e:
                if e.status_code in (401, 403):
                    error: ProtectClientError = InvalidCredentialsError(
                        f'NVR rejected credentials (status code: {e.status_code})',
                        original_error=e,
                    )
                    self._fail_login(error, host, port, refreshing)
                    raise error from e
                self._fail_login(e, host, port, refreshing)
                raise
            except ConnectionError as e:
                self._fail_login(e, host, port, refreshing)
                raise

            cookie = parse_set_cookie(response.headers.get_list('set-cookie'))
            if cookie is None:
                error = InvalidCredentialsError('Invalid set-cookie header.')
                self._fail_login(error, host, port, refreshing)
                raise error

            session = Session(
                host=host,
                port=port,
                cookie_token=cookie,
                csrf_token=response.headers.get('x-csrf-token'),
                created_at=datetime.now(timezone.utc),
            )
            self._webclient.replace_session(session)
            self._credentials = (username, password)

            self._set_state(SessionState.REFRESHING if refreshing else SessionState.LOGGED_IN)
            self._publish_status(SessionStatus.CONNECTED)
            logger.info(f'Logged in to Protect NVR at {host}')
            return session

    async def get_bootstrap_info(self) -> Bootstrap:
        """Fetch the full state snapshot and store its cursor.

        On success the bootstrap callback runs exactly once so the
        realtime listener resumes from the new cursor.

        Returns:
            A copy of the new bootstrap.

        Raises:
            ProtectClientError: If the request fails or the snapshot is empty.
        """
        try:
            response = await self._webclient.get('bootstrap')
        except ConnectionError as e:
            self._fail(e)
            raise

        try:
            raw = json.loads(response) if response else None
            if not raw:
                raise ProtectClientError('Error obtaining bootstrap info.')
            bootstrap = Bootstrap.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ProtectClientError(f'Error obtaining bootstrap info: {e}', original_error=e) from e

        self._bootstrap = bootstrap
        if bootstrap.access_key:
            self._webclient.api_key = bootstrap.access_key

        logger.info(
            f'Bootstrap loaded from {bootstrap.nvr.display_name}: '
            f'{len(bootstrap.cameras)} cameras, lastUpdateId={bootstrap.last_update_id}'
        )
        self._bus.publish(
            StatusEvent(
                kind=StatusEventKind.BOOTSTRAP_LOADED,
                data={'last_update_id': bootstrap.last_update_id},
            )
        )

        if self.on_bootstrap is not None:
            result = self.on_bootstrap()
            if asyncio.iscoroutine(result):
                await result

        return bootstrap.model_copy(deep=True)

    def advance_cursor(self, update_id: str | None) -> None:
        """Move the resume cursor forward after a processed update."""
        if update_id and self._bootstrap is not None:
            self._bootstrap.last_update_id = update_id

    async def refresh(self) -> bool:
        """Rotate the session token before the NVR expires it.

        Re-runs login with the cached credentials and re-fetches the
        bootstrap. Also recovers an EXPIRED session. A no-op when logged
        out. Never raises; on failure the session is left EXPIRED.

        Returns:
            True if the session was refreshed.
        """
        refreshable = (SessionState.LOGGED_IN, SessionState.REFRESHING, SessionState.EXPIRED)
        if self._state not in refreshable or self._credentials is None:
            logger.debug('Not logged in, skipping session refresh')
            return False

        session = self._webclient.session
        username, password = self._credentials
        self._set_state(SessionState.REFRESHING)
        try:
            await self.login(session.host, session.port, username, password)
            await self.get_bootstrap_info()
        except ProtectClientError as e:
            logger.error(f'Session refresh failed: {e.message}')
            if self._state == SessionState.REFRESHING:
                self._fail(e)
            self._set_state(SessionState.EXPIRED)
            return False
        self._set_state(SessionState.LOGGED_IN)
        logger.debug('Session refreshed')
        return True

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f'Unexpected error in session refresh: {e}')

    def start_refresh(self) -> None:
        """Start the periodic session refresh."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop_refresh(self) -> None:
        """Stop the periodic session refresh."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def login_from_settings(self, settings: SettingsStore) -> bool:
        """Log in and bootstrap with the host and credentials from settings.

        Args:
            settings: The host application's settings store.

        Returns:
            True if login and bootstrap succeeded. False if settings are
            missing or malformed, or when the NVR could not be reached.
        """
        host = settings.get_setting(SETTING_NVR_IP) or self._config.host
        if not host:
            logger.info('NVR IP address not set.')
            return False

        credentials = settings.get_setting(SETTING_CREDENTIALS)
        if credentials:
            if not isinstance(credentials, Mapping):
                logger.error(f'Invalid {SETTING_CREDENTIALS} setting: expected a mapping')
                return False
            username = credentials.get('username')
            password = credentials.get('password')
        elif self._credentials is not None:
            username, password = self._credentials
        else:
            logger.info('Credentials not set.')
            return False

        raw_port = settings.get_setting(SETTING_NVR_PORT) or self._config.port
        try:
            port = int(raw_port)
        except (TypeError, ValueError):
            logger.error(f'Invalid {SETTING_NVR_PORT} setting: {raw_port!r}')
            return False

        try:
            await self.login(host, port, username, password)
            await self.get_bootstrap_info()
        except ProtectClientError as e:
            logger.error(f'Login failed: {e.message}')
            return False
        return True

    def watch_settings(self, settings: SettingsStore) -> Callable[[], None]:
        """Re-run login whenever the credentials or NVR address change.

        Args:
            settings: The host application's settings store.

        Returns:
            Unsubscribe function.
        """

        async def on_change(key: str) -> None:
            if key in (SETTING_CREDENTIALS, SETTING_NVR_IP, SETTING_NVR_PORT):
                logger.info(f'Setting {key} changed, logging in again')
                await self.login_from_settings(settings)

        self._settings_unsub = settings.on_setting_changed(None, on_change)
        return self._settings_unsub

    async def close(self) -> None:
        """Stop refreshing and forget settings subscriptions."""
        await self.stop_refresh()
        if self._settings_unsub is not None:
            self._settings_unsub()
            self._settings_unsub = None
        self._set_state(SessionState.LOGGED_OUT)

