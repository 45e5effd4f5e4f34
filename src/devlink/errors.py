"""Exception hierarchy and connect-failure classification for devlink."""

from __future__ import annotations

import re
from typing import Any, Optional


class DevLinkError(Exception):
    """
    Base exception for devlink.

    Attributes:
        details: Optional structured information (path, role, errno, ...).
        cause: Optional original exception that triggered this error.
        fatal: When True the connection cannot be reused and the session
            disconnects.
    """

    fatal = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.cause = cause


class AuthError(DevLinkError):
    """Raised when the device rejects authentication."""


class DeviceBusyError(DevLinkError):
    """Raised when the device interface is already claimed by another client."""


class DeviceUnavailableError(DevLinkError):
    """Raised when the device cannot be reached."""


class NotConnectedError(DevLinkError):
    """Raised when an operation needs a connection and none is open."""


class AlreadyRunningError(DevLinkError):
    """Raised when a process role slot is already occupied."""


class SpawnError(DevLinkError):
    """Raised when the remote process could not be started."""


class ReadError(DevLinkError):
    """Raised when reading process output fails mid-stream."""


class PathNotFoundError(DevLinkError):
    """Raised when a remote path does not exist."""


class PermissionError(DevLinkError):
    """Raised when the device denies access to a remote path."""


class ChannelIOError(DevLinkError):
    """Raised on a transport-level failure during a sync operation."""


class TransportLostError(ChannelIOError):
    """Raised when the underlying transport is gone."""

    fatal = True


_BUSY_PATTERN = re.compile(r"busy|in use", re.IGNORECASE)


def classify_connect_error(exc: BaseException) -> DevLinkError:
    """
    Map a raw connect/authenticate failure to a devlink exception.

    Policy:
        - already a DevLinkError -> returned unchanged
        - message mentions "busy" / "in use" -> DeviceBusyError
        - socket/OS level failure -> DeviceUnavailableError
        - otherwise -> AuthError
    """
    if isinstance(exc, DevLinkError):
        return exc

    message = str(exc) or exc.__class__.__name__
    if _BUSY_PATTERN.search(message):
        return DeviceBusyError(
            "The device interface is already in use by another program. "
            "Close the other client and try again.",
            details={"reason": message},
            cause=exc,
        )
    if isinstance(exc, OSError):
        return DeviceUnavailableError(
            f"Device unavailable: {message}", details={"reason": message}, cause=exc
        )
    return AuthError(f"Authentication failed: {message}", details={"reason": message}, cause=exc)
