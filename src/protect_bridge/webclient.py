"""Authenticated HTTP client for the UniFi Protect REST API.

This module wraps an ``httpx.AsyncClient`` and owns the live ``Session``.
Any response carrying ``set-cookie`` rotates the session cookie, so session
renewal happens transparently on every call and not only on login.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Literal, overload

import httpx
from loguru import logger  # type: ignore[import-untyped]

from protect_bridge.config import ProtectConfig
from protect_bridge.constants import API_PATH, LOGIN_PATH
from protect_bridge.errors import (
    ConnectionError,
    HttpStatusError,
    InvalidHostError,
    NotAuthenticatedError,
)
from protect_bridge.models import Session


def parse_set_cookie(values: list[str]) -> str | None:
    """Reduce ``set-cookie`` header values to a ``Cookie`` header value."""
    pairs = [value.split(';', 1)[0].strip() for value in values]
    pairs = [pair for pair in pairs if pair]
    if not pairs:
        return None
    return '; '.join(dict.fromkeys(pairs))


class WebClient:
    """Low-level authenticated client for the NVR REST endpoint.

    Every request needs a host and a session cookie; both are checked
    before any network I/O. Resources are relative to the Protect API
    prefix (``/proxy/protect/api``).

    Example:
        >>> client = WebClient(config)
        >>> client.replace_session(Session(host='nvr.local', cookie_token='TOKEN=abc'))
        >>> cameras = await client.get('cameras')
    """

    def __init__(self, config: ProtectConfig) -> None:
        """Initialize the web client.

        Args:
            config: Connection configuration; supplies timeouts and the
                TLS trust policy.
        """
        self._config = config
        self._session = Session(host=config.host, port=config.port)
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._request_seq = 0
        self._rotation_seq = 0
        self.on_unauthorized: Callable[[], None] | None = None

    @property
    def session(self) -> Session:
        """Get the live session."""
        return self._session

    @property
    def server_host(self) -> str | None:
        return self._session.host

    @property
    def server_port(self) -> int:
        return self._session.port

    @property
    def cookie_token(self) -> str | None:
        return self._session.cookie_token

    @property
    def api_key(self) -> str | None:
        return self._session.api_key

    @api_key.setter
    def api_key(self, value: str | None) -> None:
        self._session.api_key = value

    @property
    def csrf_token(self) -> str | None:
        return self._session.csrf_token

    def replace_session(self, session: Session) -> None:
        """Install a new session wholesale.

        The new session always gets a generation above the current one so
        responses to requests issued under the old session can no longer
        rotate its cookie.

        Args:
            session: The session to install.
        """
        session.generation = self._session.generation + 1
        self._session = session
        self._rotation_seq = self._request_seq
        logger.debug(f'Session generation {session.generation} installed for {session.host}')

    def invalidate_session(self) -> None:
        """Drop the session cookie, keeping host and port."""
        self.replace_session(Session(host=self._session.host, port=self._session.port))

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    verify=self._config.verify_ssl,
                    timeout=httpx.Timeout(self._config.request_timeout),
                    follow_redirects=True,
                    max_redirects=20,
                )
            return self._client

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
                logger.debug('Closed NVR HTTP client')

    def _base_url(self) -> str:
        return f'https://{self._session.host}:{self._session.port}'

    def build_url(self, resource: str, params: dict[str, Any] | None = None) -> str:
        """Build an absolute API URL.

        Args:
            resource: Resource path relative to the API prefix.
            params: Query parameters.

        Returns:
            The absolute URL.

        Raises:
            InvalidHostError: If no host is set.
        """
        if not self._session.host:
            raise InvalidHostError('Invalid host.')
        url = httpx.URL(f'{self._base_url()}{API_PATH}/{resource.lstrip("/")}')
        if params:
            url = url.copy_merge_params(params)
        return str(url)

    def _capture_session_headers(
        self, response: httpx.Response, generation: int, request_seq: int
    ) -> None:
        """Rotate the cookie and CSRF token from a response.

        Rotation is accepted only from the current session generation and
        only from a request issued after the last accepted rotation.
        """
        if generation != self._session.generation or request_seq <= self._rotation_seq:
            logger.debug(f'Ignoring session headers from stale request #{request_seq}')
            return

        cookie = parse_set_cookie(response.headers.get_list('set-cookie'))
        if cookie is not None and cookie != self._session.cookie_token:
            self._session.cookie_token = cookie
            self._rotation_seq = request_seq
            logger.debug('Session cookie rotated')

        csrf = response.headers.get('x-csrf-token')
        if csrf:
            self._session.csrf_token = csrf

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        base_url: str | None = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(
                method,
                f'{base_url or self._base_url()}{path}',
                params=params,
                json=json,
                headers=headers,
                timeout=httpx.Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise ConnectionError(f'Request timed out: {method} {path}', original_error=e) from e
        except httpx.TransportError as e:
            raise ConnectionError(f'Connection failed: {method} {path}: {e}', original_error=e) from e

    async def authenticate(
        self,
        username: str,
        password: str,
        timeout: float | None = None,
        host: str | None = None,
        port: int | None = None,
    ) -> httpx.Response:
        """Post credentials to the login endpoint.

        The response is returned as is; reading the cookie and installing
        the new session is up to the caller. The live session stays in
        place while the login is in flight.

        Args:
            username: NVR username.
            password: NVR password.
            timeout: Request timeout in seconds.
            host: NVR to log in to; the live session's host when None.
            port: HTTPS port; the live session's port when None.

        Returns:
            The successful login response.

        Raises:
            InvalidHostError: If no host is set.
            HttpStatusError: If the NVR answers with a non-200 status.
            ConnectionError: If the NVR cannot be reached.
        """
        host = host or self._session.host
        if not host:
            raise InvalidHostError('Invalid host.')
        port = port or self._session.port

        response = await self._send(
            'POST',
            LOGIN_PATH,
            json={'username': username, 'password': password, 'remember': True},
            headers={
                'Content-Type': 'application/json; charset=utf-8',
                'Accept': 'application/json',
            },
            timeout=timeout,
            base_url=f'https://{host}:{port}',
        )
        if response.status_code != 200:
            raise HttpStatusError('POST', LOGIN_PATH, response.status_code)
        return response

    @overload
    async def request(
        self,
        method: str,
        resource: str,
        *,
        params: dict[str, Any] | None = ...,
        payload: dict[str, Any] | None = ...,
        binary: Literal[False] = ...,
    ) -> str: ...

    @overload
    async def request(
        self,
        method: str,
        resource: str,
        *,
        params: dict[str, Any] | None = ...,
        payload: dict[str, Any] | None = ...,
        binary: Literal[True],
    ) -> bytes: ...

    async def request(
        self,
        method: str,
        resource: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        binary: bool = False,
    ) -> str | bytes:
        """Make an authenticated API request.

        Args:
            method: HTTP method.
            resource: Resource path relative to the API prefix.
            params: Query parameters.
            payload: JSON body for write requests.
            binary: Return raw bytes instead of decoded text.

        Returns:
            The response body as text, or bytes when ``binary`` is set.

        Raises:
            InvalidHostError: If no host is set.
            NotAuthenticatedError: If no session cookie is held.
            HttpStatusError: If the NVR answers with a non-200 status.
            ConnectionError: If the NVR cannot be reached.
        """
        method = method.upper()
        if not self._session.host:
            raise InvalidHostError('Invalid host.')
        if not self._session.cookie_token:
            raise NotAuthenticatedError('Not logged in.')

        path = f'{API_PATH}/{resource.lstrip("/")}'
        query = dict(params or {})
        if method == 'GET' and self._session.api_key:
            query['accessKey'] = self._session.api_key
        elif method == 'PUT' and self._session.api_key:
            query['apiKey'] = self._session.api_key

        headers = {
            'Content-Type': 'application/json; charset=utf-8',
            'Accept': '*/*' if binary else 'application/json',
            'Cookie': self._session.cookie_token,
        }
        if method != 'GET' and self._session.csrf_token:
            headers['x-csrf-token'] = self._session.csrf_token

        self._request_seq += 1
        request_seq = self._request_seq
        generation = self._session.generation

        response = await self._send(
            method,
            path,
            params=query or None,
            json=payload if method != 'GET' else None,
            headers=headers,
        )

        if response.status_code != 200:
            if response.status_code == 401 and generation == self._session.generation:
                logger.warning(f'NVR rejected session on {method} {path}')
                if self.on_unauthorized is not None:
                    self.on_unauthorized()
            raise HttpStatusError(method, path, response.status_code)

        self._capture_session_headers(response, generation, request_seq)

        if binary:
            return response.content
        return response.text

    async def get(self, resource: str, params: dict[str, Any] | None = None) -> str:
        """Make a GET request."""
        return await self.request('GET', resource, params=params)

    async def put(self, resource: str, payload: dict[str, Any] | None = None) -> str:
        """Make a PUT request."""
        return await self.request('PUT', resource, payload=payload or {})

    async def patch(self, resource: str, payload: dict[str, Any] | None = None) -> str:
        """Make a PATCH request."""
        return await self.request('PATCH', resource, payload=payload or {})

    async def post(self, resource: str, payload: dict[str, Any] | None = None) -> str:
        """Make a POST request."""
        return await self.request('POST', resource, payload=payload or {})

    async def download(self, resource: str, params: dict[str, Any] | None = None) -> bytes:
        """Make a GET request and return the raw body."""
        return await self.request('GET', resource, params=params, binary=True)
