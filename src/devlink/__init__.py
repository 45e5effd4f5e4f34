"""Public interface for the devlink package."""

from .browser import FileBrowser
from .config import SessionConfig, setup_logging
from .connection import Connection
from .controller import ProcessController, RunningProcess
from .errors import (
    AlreadyRunningError,
    AuthError,
    ChannelIOError,
    DeviceBusyError,
    DeviceUnavailableError,
    DevLinkError,
    NotConnectedError,
    PathNotFoundError,
    PermissionError,
    ReadError,
    SpawnError,
    TransportLostError,
    classify_connect_error,
)
from .fileops import FsEntry, join_path, normalize_path, parent_path, sort_entries
from .process import ProcessState, Role, StreamProcess, merge_channels, shell_command
from .session import DeviceSession, SessionListener
from .ssh import SSHAuthenticator, SSHCredentials, SSHTransport
from .sync import SyncGateway
from .transfer import Direction, TransferStatus, TransferTask, TransferTracker, read_head

__all__ = [
    # Session
    "DeviceSession",
    "SessionListener",
    "SSHAuthenticator",
    "SSHCredentials",
    "SSHTransport",
    "SessionConfig",
    "setup_logging",
    # Components
    "Connection",
    "FileBrowser",
    "ProcessController",
    "RunningProcess",
    "StreamProcess",
    "SyncGateway",
    "TransferTracker",
    # Models
    "Direction",
    "FsEntry",
    "ProcessState",
    "Role",
    "TransferStatus",
    "TransferTask",
    # Helpers
    "join_path",
    "merge_channels",
    "normalize_path",
    "parent_path",
    "read_head",
    "shell_command",
    "sort_entries",
    # Errors
    "DevLinkError",
    "AuthError",
    "DeviceBusyError",
    "DeviceUnavailableError",
    "NotConnectedError",
    "AlreadyRunningError",
    "SpawnError",
    "ReadError",
    "PathNotFoundError",
    "PermissionError",
    "ChannelIOError",
    "TransportLostError",
    "classify_connect_error",
]
