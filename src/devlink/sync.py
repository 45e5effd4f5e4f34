"""Serialized access to the device's file-sync channel."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    TypeVar,
    Union,
)

from .errors import ChannelIOError, DevLinkError, NotConnectedError
from .fileops import FsEntry, normalize_path
from .process import best_effort
from .transport import DeviceTransport, SyncChannelHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")
ByteSource = Union[AsyncIterable[bytes], Iterable[bytes]]
ProgressCallback = Callable[[int], None]


class SyncGateway:
    """
    Run one list/read/write operation at a time on a fresh sync channel.

    The lock is held from channel open until dispose, so operations issued
    back to back by unrelated callers never overlap on the wire. Generators
    returned by :meth:`list` and :meth:`read` hold the lock until they are
    exhausted or closed; wrap early exits in :func:`contextlib.aclosing`.
    """

    def __init__(self, transport: DeviceTransport) -> None:
        self._transport = transport
        self._lock = asyncio.Lock()
        self._channel: Optional[SyncChannelHandle] = None
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def channel(self) -> AsyncIterator[SyncChannelHandle]:
        async with self._lock:
            if self._closed:
                raise NotConnectedError("Sync channel is closed")
            try:
                handle = await self._transport.open_sync()
            except DevLinkError:
                raise
            except Exception as exc:
                raise ChannelIOError(f"Could not open sync channel: {exc}", cause=exc) from exc
            self._channel = handle
            logger.debug("Sync channel opened")
            try:
                yield handle
            except DevLinkError:
                raise
            except Exception as exc:
                raise ChannelIOError(f"Sync operation failed: {exc}", cause=exc) from exc
            finally:
                await self._dispose(handle)

    async def with_channel(self, operation: Callable[[SyncChannelHandle], Awaitable[T]]) -> T:
        async with self.channel() as handle:
            return await operation(handle)

    async def list(self, path: str) -> AsyncIterator[FsEntry]:
        directory = normalize_path(path)
        async with self.channel() as handle:
            async for raw in handle.list(directory):
                if raw.name in (".", ".."):
                    continue
                yield FsEntry.from_raw(directory, raw)

    async def read(self, path: str) -> AsyncIterator[bytes]:
        async with self.channel() as handle:
            async for chunk in handle.read(normalize_path(path)):
                if chunk:
                    yield chunk

    async def write(
        self,
        path: str,
        source: ByteSource,
        size_hint: Optional[int] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        permission: Optional[int] = None,
    ) -> int:
        """Write ``source`` to ``path`` and return the number of bytes sent."""
        target = normalize_path(path)
        sent = 0
        source_error: Optional[Exception] = None

        async def counted() -> AsyncIterator[bytes]:
            nonlocal sent, source_error
            try:
                async for chunk in _aiter(source):
                    if not chunk:
                        continue
                    yield chunk
                    # resumed: the channel has taken the previous chunk
                    sent += len(chunk)
                    if on_progress is not None:
                        on_progress(sent)
            except Exception as exc:
                source_error = exc
                raise

        logger.debug(f"Writing {target} (size hint {size_hint})")
        try:
            async with self.channel() as handle:
                await handle.write(target, counted(), permission)
        except ChannelIOError as exc:
            # a failing local source is not a device error
            if source_error is not None and exc.cause is source_error:
                raise source_error from None
            raise
        return sent

    async def close(self) -> None:
        """Refuse new operations and dispose a channel that is still open."""
        self._closed = True
        handle = self._channel
        if handle is not None:
            logger.info("Disposing open sync channel")
            await self._dispose(handle)

    async def _dispose(self, handle: SyncChannelHandle) -> None:
        if self._channel is not handle:
            return
        self._channel = None
        await best_effort(handle.dispose, "sync channel dispose")
        logger.debug("Sync channel disposed")


async def _aiter(source: ByteSource) -> AsyncIterator[bytes]:
    if hasattr(source, "__aiter__"):
        async for chunk in source:  # type: ignore[union-attr]
            yield chunk
    else:
        for chunk in source:  # type: ignore[union-attr]
            yield chunk
