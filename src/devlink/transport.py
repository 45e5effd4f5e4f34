"""Interfaces the core expects from a device transport backend."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class RawDirEntry:
    """Directory entry as reported by a sync channel."""

    name: str
    mode: int
    size: int
    mtime: int


@runtime_checkable
class ByteReader(Protocol):
    """Pull-based reader over one output channel of a remote process."""

    async def read(self) -> Optional[bytes]:
        """Return the next chunk, or ``None`` once the channel has ended."""

    async def cancel(self) -> None:
        """Abort a pending read; later reads return ``None``."""

    def release(self) -> None:
        """Drop the reader's hold on the channel."""


class RawProcess(Protocol):
    readers: Sequence[ByteReader]

    async def kill(self) -> None: ...


class SyncChannelHandle(Protocol):
    """One open file-sync channel. Only one operation may be in flight."""

    def list(self, path: str) -> AsyncIterator[RawDirEntry]: ...

    def read(self, path: str) -> AsyncIterator[bytes]: ...

    async def write(
        self,
        path: str,
        source: AsyncIterator[bytes],
        permission: Optional[int] = None,
    ) -> None: ...

    async def dispose(self) -> None: ...


class DeviceTransport(Protocol):
    """Authenticated transport to exactly one device."""

    @property
    def supports_split_streams(self) -> bool: ...

    async def spawn(self, argv: Sequence[str], *, split_streams: bool) -> RawProcess: ...

    async def open_sync(self) -> SyncChannelHandle: ...

    async def close(self) -> None: ...


class Authenticator(Protocol):
    async def authenticate(self, device_id: str, credentials: Any) -> DeviceTransport: ...
