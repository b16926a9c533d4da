"""Realtime update listener for the UniFi Protect NVR.

The listener keeps one websocket open to the NVR's update endpoint,
resuming from the bootstrap's ``lastUpdateId`` cursor. It never connects
before a cursor exists.

Liveness:
    * every inbound message, ping or pong re-arms a heartbeat timer; when
      it expires the listener drops the socket at once and schedules a
      reconnect. The close frame goes out in the background, bounded by
      aiohttp's close timeout, so a silent peer never delays the reconnect;
    * an application-level ping goes out on a separate keepalive interval.

Reconnects are serialized: close, error and heartbeat expiry can all fire
for the same socket, but only one reconnect task is ever in flight.

Example:
    >>> listener = RealtimeListener(config, session, dispatcher, bus)
    >>> session.on_bootstrap = listener.request_reconnect
    >>> await session.login(host, 443, username, password)
    >>> await session.get_bootstrap_info()  # listener connects
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientWebSocketResponse, WSMsgType
from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.config import ProtectConfig
from protect_bridge.constants import WS_UPDATES_PATH
from protect_bridge.errors import ConnectionError
from protect_bridge.events import StatusEvent, StatusEventBus, StatusEventKind
from protect_bridge.protocol import decode_update_packet


if TYPE_CHECKING:
    from protect_bridge.dispatcher import EventDispatcher
    from protect_bridge.session import SessionManager


class ListenerState(str, Enum):
    """Connection states of the realtime listener."""

    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


class RealtimeListener:
    """Websocket client for the NVR update stream.

    Attributes:
        state: Current connection state.
        messages_received: Binary messages received since creation.
        packets_dropped: Binary messages that failed to decode.
    """

    def __init__(
        self,
        config: ProtectConfig,
        session: SessionManager,
        dispatcher: EventDispatcher,
        bus: StatusEventBus,
    ) -> None:
        """Initialize the listener.

        Args:
            config: Connection configuration; supplies the liveness
                intervals and the TLS trust policy.
            session: Source of the session cookie and the resume cursor.
            dispatcher: Receives every decoded update packet.
            bus: Status event bus for state changes and disconnects.
        """
        self._config = config
        self._session = session
        self._dispatcher = dispatcher
        self._bus = bus
        self._state = ListenerState.DISCONNECTED
        self._client: aiohttp.ClientSession | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.TimerHandle | None = None
        self._closing: set[asyncio.Task[None]] = set()
        self._stopped = False
        self.messages_received = 0
        self.packets_dropped = 0

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ListenerState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        """Check whether a reconnect task is in flight."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _set_state(self, state: ListenerState) -> None:
        if state == self._state:
            return
        logger.debug(f'Realtime listener {self._state.value} -> {state.value}')
        self._state = state
        self._bus.publish(StatusEvent(kind=StatusEventKind.LISTENER_STATE, state=state.value))

    def build_url(self, cursor: str) -> str:
        """Build the update stream URL for a resume cursor."""
        session = self._session.session
        netloc = session.host if session.port == 443 else f'{session.host}:{session.port}'
        return f'wss://{netloc}{WS_UPDATES_PATH}?{urlencode({"lastUpdateId": cursor})}'

    async def _get_client(self) -> aiohttp.ClientSession:
        if self._client is None or self._client.closed:
            self._client = aiohttp.ClientSession()
        return self._client

    async def connect(self) -> bool:
        """Open the update stream if a cursor and a session cookie exist.

        Returns:
            True if the socket is connected.
        """
        if self._ws is not None and not self._ws.closed:
            return True

        cursor = self._session.last_update_id
        cookie = self._session.session.cookie_token
        if not cursor or not cookie:
            logger.debug('No bootstrap cursor yet, not connecting to update stream')
            return False

        url = self.build_url(cursor)
        self._set_state(ListenerState.CONNECTING)
        logger.info(f'Update listener: {url}')

        client = await self._get_client()
        try:
            ws = await asyncio.wait_for(
                client.ws_connect(
                    url,
                    headers={'Cookie': cookie},
                    ssl=None if self._config.verify_ssl else False,
                    autoping=False,
                ),
                timeout=self._config.request_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            error = ConnectionError(
                f'Error connecting to the realtime update events API: {e}', original_error=e
            )
            logger.error(f'{self._session.session.host}: {error.message}')
            self._set_state(ListenerState.DISCONNECTED)
            self._bus.publish(StatusEvent(kind=StatusEventKind.CONNECTION_ERROR, error=error))
            return False

        self._ws = ws
        self._set_state(ListenerState.CONNECTED)
        self._reset_heartbeat()
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))
        logger.info(f'{self._session.session.host}: Connected to the realtime update events API')
        return True

    async def _receive_loop(self, ws: ClientWebSocketResponse) -> None:
        error: Exception | None = None
        try:
            async for msg in ws:
                self._reset_heartbeat()
                if msg.type == WSMsgType.BINARY:
                    self._handle_message(msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    error = ws.exception()
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
        self._handle_disconnect(ws, error)

    def _handle_message(self, data: bytes) -> None:
        self.messages_received += 1
        packet = decode_update_packet(data)
        if packet is None:
            self.packets_dropped += 1
            logger.warning('Unable to process message from the realtime update events API')
            return

        try:
            self._dispatcher.handle_packet(packet)
        except Exception as e:
            logger.error(f'Error dispatching realtime update for {packet.action.id}: {e}')
        self._session.advance_cursor(packet.action.new_update_id)

    async def _keepalive_loop(self, ws: ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self._config.keepalive_interval)
            try:
                await ws.ping()
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
                logger.debug(f'Keepalive ping failed: {e}')
                return

    def _reset_heartbeat(self) -> None:
        self._cancel_heartbeat()
        loop = asyncio.get_running_loop()
        self._heartbeat = loop.call_later(
            self._config.heartbeat_interval, self._on_heartbeat_timeout
        )

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def _on_heartbeat_timeout(self) -> None:
        self._heartbeat = None
        ws = self._ws
        if ws is None:
            return
        logger.warning(
            f'No realtime traffic for {self._config.heartbeat_interval}s, terminating socket'
        )
        self._handle_disconnect(ws, ConnectionError('Heartbeat timeout'))

    def _terminate(self) -> None:
        """Forget the socket and clear all timers.

        The listener stops using the socket immediately. Its close runs as a
        background task that ``stop`` waits for.
        """
        self._cancel_heartbeat()
        current = asyncio.current_task()
        for task in (self._receive_task, self._keepalive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._receive_task = None
        self._keepalive_task = None

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            closing = asyncio.ensure_future(ws.close())
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)

    def _handle_disconnect(self, ws: ClientWebSocketResponse, error: Exception | None) -> None:
        if ws is not self._ws:
            return
        self._terminate()
        self._set_state(ListenerState.DISCONNECTED)
        if self._stopped:
            return

        if error is not None:
            logger.warning(f'Realtime update stream lost: {error}')
        else:
            logger.info('Realtime update stream closed by the NVR')
        self._bus.publish(StatusEvent(kind=StatusEventKind.CONNECTION_CLOSED, error=error))
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self.reconnect_pending:
            logger.debug('Reconnect already pending')
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    def request_reconnect(self) -> None:
        """Reconnect from the current cursor.

        Called after every bootstrap. A reconnect already in flight is
        replaced so the new connection uses the new cursor.
        """
        if self._stopped:
            return
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        self._terminate()
        self._set_state(ListenerState.DISCONNECTED)

        while self._session.last_update_id is None and not self._stopped:
            logger.debug('Waiting for a bootstrap cursor before reconnecting')
            await asyncio.sleep(max(self._config.reconnect_delay, 0.1))

        delay = self._config.reconnect_delay
        while not self._stopped:
            await asyncio.sleep(delay)
            if await self.connect():
                return
            delay = min(max(delay * 2, 1.0), self._config.max_reconnect_delay)
            logger.info(f'Retrying realtime connection in {delay:.0f}s')

    async def start(self) -> None:
        """Allow connections and connect if a cursor already exists."""
        self._stopped = False
        if self._session.last_update_id is not None:
            await self.connect()

    async def stop(self) -> None:
        """Close the update stream and stop reconnecting."""
        self._stopped = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        self._terminate()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._set_state(ListenerState.DISCONNECTED)

        if self._client is not None:
            await self._client.close()
            self._client = None
        logger.debug('Realtime listener stopped')
