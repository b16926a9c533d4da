"""Configuration models for the Protect bridge.

This module provides the Pydantic model for configuring the NVR connection
and the timing of the session and realtime subsystems, including
environment variable loading and validation.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class ProtectConfig(BaseModel):
    """Configuration for connecting to a UniFi Protect NVR.

    Credentials are optional here because the host application usually
    supplies them later through its settings store.

    Attributes:
        host: Hostname or IP address of the NVR.
        port: HTTPS port of the NVR (default: 443).
        username: Username for authentication.
        password: Password for authentication (stored securely).
        verify_ssl: Verify the NVR certificate (default: False, the NVR
            ships a self-signed certificate).
        request_timeout: Timeout in seconds for REST calls.
        login_timeout: Timeout in seconds for the login call.
        heartbeat_interval: Seconds without realtime traffic before the
            socket is terminated.
        keepalive_interval: Seconds between application-level pings.
        reconnect_delay: Seconds before the first realtime reconnect attempt.
        max_reconnect_delay: Upper bound of the reconnect backoff.
        refresh_interval: Seconds between session refreshes.
        motion_poll_interval: Seconds between motion event polls.
        retry_delay: Seconds before retrying login after a connection error.
        snapshot_width: Default snapshot width in pixels.
        debug: Enable debug logging.

    Example:
        >>> config = ProtectConfig(
        ...     host="192.168.1.1",
        ...     username="admin",
        ...     password=SecretStr("password123")
        ... )
        >>> print(config.has_credentials)
        True
    """

    host: Annotated[str, Field(min_length=1, description='UniFi Protect NVR host')]
    port: Annotated[int, Field(default=443, ge=1, le=65535, description='HTTPS port')]
    username: Annotated[str | None, Field(default=None, description='Authentication username')]
    password: Annotated[SecretStr | None, Field(default=None, description='Authentication password')]
    verify_ssl: Annotated[bool, Field(default=False, description='Verify SSL certificates')]
    request_timeout: Annotated[
        float, Field(default=10.0, gt=0, le=300, description='REST timeout in seconds')
    ]
    login_timeout: Annotated[
        float, Field(default=2.0, gt=0, le=60, description='Login timeout in seconds')
    ]
    heartbeat_interval: Annotated[
        float, Field(default=10.0, gt=0, description='Realtime liveness timeout in seconds')
    ]
    keepalive_interval: Annotated[
        float, Field(default=15.0, gt=0, description='Realtime ping interval in seconds')
    ]
    reconnect_delay: Annotated[
        float, Field(default=1.0, ge=0, description='Realtime reconnect delay in seconds')
    ]
    max_reconnect_delay: Annotated[
        float, Field(default=60.0, gt=0, description='Realtime reconnect backoff cap in seconds')
    ]
    refresh_interval: Annotated[
        float, Field(default=45 * 60, gt=0, description='Session refresh interval in seconds')
    ]
    motion_poll_interval: Annotated[
        float, Field(default=1.0, gt=0, description='Motion event poll interval in seconds')
    ]
    retry_delay: Annotated[
        float, Field(default=5.0, ge=0, description='Login retry delay in seconds')
    ]
    snapshot_width: Annotated[
        int, Field(default=1920, ge=16, le=7680, description='Snapshot width in pixels')
    ]
    debug: Annotated[bool, Field(default=False, description='Enable debug logging')]

    model_config = {'extra': 'forbid', 'validate_assignment': True}

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Validate and normalize the host value.

        Args:
            v: The host string to validate.

        Returns:
            The normalized host string with protocol prefixes removed.

        Raises:
            ValueError: If the host is empty after normalization.
        """
        normalized = v.strip()
        for prefix in ('https://', 'http://', 'wss://'):
            if normalized.lower().startswith(prefix):
                normalized = normalized[len(prefix) :]
                break
        normalized = normalized.rstrip('/').split(':')[0]
        if not normalized:
            raise ValueError('Host cannot be empty')
        return normalized

    @model_validator(mode='after')
    def validate_authentication(self) -> ProtectConfig:
        """Validate that credentials are given together or not at all.

        Returns:
            The validated configuration instance.

        Raises:
            ValueError: If only one of username and password is set.
        """
        if (self.username is None) != (self.password is None):
            raise ValueError('Username and password must be provided together')
        return self

    @property
    def has_credentials(self) -> bool:
        """Check whether both username and password are configured."""
        return bool(self.username) and self.password is not None

    @classmethod
    def from_env(
        cls,
        env_file: str | Path | None = None,
        prefix: str = 'PROTECT_',
    ) -> ProtectConfig:
        """Load configuration from environment variables.

        Reads configuration from environment variables with the specified prefix.
        Optionally loads variables from an env file first.

        Args:
            env_file: Optional path to an environment file to load.
            prefix: Environment variable prefix (default: 'PROTECT_').

        Returns:
            A ProtectConfig instance populated from environment variables.

        Raises:
            ValueError: If required environment variables are missing.

        Example:
            >>> # With environment variables:
            >>> # PROTECT_HOST=192.168.1.1
            >>> # PROTECT_USERNAME=admin
            >>> # PROTECT_PASSWORD=secret
            >>> config = ProtectConfig.from_env()
        """
        if env_file is not None:
            _load_env_file(Path(env_file))

        def get_env(key: str, default: str | None = None) -> str | None:
            return os.environ.get(f'{prefix}{key}', default)

        host = get_env('HOST')
        if not host:
            raise ValueError(f'{prefix}HOST environment variable is required')

        username = get_env('USERNAME') or None
        password = get_env('PASSWORD') or None

        return cls(
            host=host,
            port=int(get_env('PORT', '443') or '443'),
            username=username,
            password=SecretStr(password) if password else None,
            verify_ssl=(get_env('VERIFY_SSL', 'false') or 'false').lower() == 'true',
            request_timeout=float(get_env('REQUEST_TIMEOUT', '10') or '10'),
            heartbeat_interval=float(get_env('HEARTBEAT_INTERVAL', '10') or '10'),
            keepalive_interval=float(get_env('KEEPALIVE_INTERVAL', '15') or '15'),
            refresh_interval=float(get_env('REFRESH_INTERVAL', '2700') or '2700'),
            motion_poll_interval=float(get_env('MOTION_POLL_INTERVAL', '1') or '1'),
            debug=(get_env('DEBUG', 'false') or 'false').lower() == 'true',
        )


def _load_env_file(env_path: Path) -> None:
    """Load environment variables from a file.

    Parses a simple .env file format and sets environment variables.
    Lines starting with # are treated as comments. Empty lines are skipped.

    Args:
        env_path: Path to the environment file.

    Raises:
        FileNotFoundError: If the env file doesn't exist.
    """
    if not env_path.exists():
        raise FileNotFoundError(f'Environment file not found: {env_path}')

    with env_path.open(encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' in line:
                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key:
                    os.environ[key] = value
