"""Exception hierarchy for the Protect bridge.

Every error raised by the bridge derives from ``ProtectClientError`` so
callers can catch the whole family at once. REST errors propagate to the
caller untouched; realtime errors are handled by the listener's reconnect
loop and only surface through logs and status events.
"""

from __future__ import annotations


class ProtectClientError(Exception):
    """Base exception for Protect bridge errors.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception that caused this error.
    """

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception, if any.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class InvalidHostError(ProtectClientError):
    """Raised when no NVR host is configured."""

    pass


class InvalidCredentialsError(ProtectClientError):
    """Raised when the NVR rejects or never issues a session cookie."""

    pass


class NotAuthenticatedError(ProtectClientError):
    """Raised when a request is attempted without a session token."""

    pass


class HttpStatusError(ProtectClientError):
    """Raised when the NVR answers with a non-200 status.

    Attributes:
        method: HTTP method of the failed request.
        path: Request path, without query string.
        status_code: Status code returned by the NVR.
    """

    def __init__(
        self,
        method: str,
        path: str,
        status_code: int,
        original_error: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            method: HTTP method of the failed request.
            path: Request path, without query string.
            status_code: Status code returned by the NVR.
            original_error: The underlying exception, if any.
        """
        super().__init__(
            f'Failed to {method} url: {path} (status code: {status_code})',
            original_error=original_error,
        )
        self.method = method
        self.path = path
        self.status_code = status_code


class MalformedFrameError(ProtectClientError):
    """Raised when a realtime update packet cannot be decoded."""

    pass


class ConnectionError(ProtectClientError):
    """Raised when the NVR cannot be reached at socket level."""

    pass


class DeviceNotFoundError(ProtectClientError):
    """Raised when an update targets a device that is not registered.

    Attributes:
        device_id: External id carried by the update.
    """

    def __init__(self, device_id: str) -> None:
        """Initialize the exception.

        Args:
            device_id: External id carried by the update.
        """
        super().__init__(f'No device registered for id {device_id}')
        self.device_id = device_id
