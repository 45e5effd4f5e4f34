"""Paramiko backed device transport.

Blocking paramiko calls run on a private thread pool; the rest of devlink
only sees coroutines. Commands go through ``exec_command`` (stdout and stderr
arrive on separate streams of the same channel) and every sync operation gets
its own SFTP session.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Sequence

import paramiko

from . import errors
from .transport import RawDirEntry

logger = logging.getLogger(__name__)

_END = object()
_SFTP_ERRORS = (OSError, EOFError, paramiko.SSHException)


@dataclass
class SSHCredentials:
    username: str
    password: Optional[str] = None
    key_filename: Optional[str] = None
    port: int = 22
    allow_agent: bool = True
    look_for_keys: bool = True
    timeout: float = 30.0


class SSHAuthenticator:
    """Open a :class:`SSHTransport` to ``device_id`` (a host name or address)."""

    def __init__(
        self,
        *,
        max_workers: int = 8,
        chunk_size: int = 32 * 1024,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._max_workers = max_workers
        self._chunk_size = chunk_size
        self._client_factory = client_factory

    async def authenticate(self, device_id: str, credentials: SSHCredentials) -> "SSHTransport":
        executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="devlink-ssh")
        loop = asyncio.get_running_loop()
        try:
            client = await loop.run_in_executor(executor, self._connect, device_id, credentials)
        except BaseException:
            executor.shutdown(wait=False)
            raise
        return SSHTransport(client, executor, chunk_size=self._chunk_size)

    def _connect(self, host: str, credentials: SSHCredentials) -> paramiko.SSHClient:
        logger.info(f"Connecting to {credentials.username}@{host}:{credentials.port}")
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                username=credentials.username,
                password=credentials.password,
                key_filename=credentials.key_filename,
                port=credentials.port,
                allow_agent=credentials.allow_agent,
                look_for_keys=credentials.look_for_keys,
                timeout=credentials.timeout,
                auth_timeout=credentials.timeout,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise errors.AuthError(f"Authentication failed: {e}", cause=e) from e
        except paramiko.SSHException as e:
            client.close()
            error = errors.classify_connect_error(e)
            if isinstance(error, errors.AuthError):
                error = errors.DeviceUnavailableError(f"SSH connection failed: {e}", cause=e)
            raise error from e
        except Exception:
            client.close()
            raise
        logger.info("SSH connection established successfully")
        return client


class SSHTransport:
    """Authenticated SSH connection to one device."""

    supports_split_streams = True

    def __init__(
        self,
        client: paramiko.SSHClient,
        executor: ThreadPoolExecutor,
        *,
        chunk_size: int = 32 * 1024,
    ) -> None:
        self._client = client
        self._executor = executor
        self._chunk_size = chunk_size

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _ensure_active(self) -> paramiko.Transport:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise errors.TransportLostError("SSH transport is no longer active")
        return transport

    async def spawn(self, argv: Sequence[str], *, split_streams: bool) -> "SSHProcess":
        # joined like adb does; the remote shell interprets the result
        command = " ".join(argv)
        transport = self._ensure_active()

        def _open() -> paramiko.Channel:
            channel = transport.open_session()
            if not split_streams:
                channel.set_combine_stderr(True)
            channel.exec_command(command)
            return channel

        try:
            channel = await self._call(_open)
        except paramiko.SSHException as e:
            raise errors.SpawnError(f"Could not run {command!r}: {e}", cause=e) from e
        logger.debug(f"Started {command!r} on channel {channel.get_id()}")
        return SSHProcess(channel, self._executor, split=split_streams, chunk_size=self._chunk_size)

    async def open_sync(self) -> "SFTPSyncChannel":
        self._ensure_active()
        try:
            sftp = await self._call(self._client.open_sftp)
        except paramiko.SSHException as e:
            raise errors.ChannelIOError(f"Could not open SFTP session: {e}", cause=e) from e
        return SFTPSyncChannel(sftp, self._executor, chunk_size=self._chunk_size)

    async def close(self) -> None:
        logger.info("Closing SSH client")
        try:
            await self._call(self._client.close)
        finally:
            self._executor.shutdown(wait=False)


class _ChannelReader:
    """Reads one stream (stdout or stderr) of an exec channel."""

    def __init__(self, recv: Callable[[int], bytes], executor: ThreadPoolExecutor, chunk_size: int) -> None:
        self._recv = recv
        self._executor = executor
        self._chunk_size = chunk_size
        self._done = False

    async def read(self) -> Optional[bytes]:
        if self._done:
            return None
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(self._executor, self._recv, self._chunk_size)
        if self._done or not data:
            self._done = True
            return None
        return data

    async def cancel(self) -> None:
        # a recv already blocked in the pool returns once the channel closes
        self._done = True

    def release(self) -> None:
        self._done = True


class SSHProcess:
    def __init__(
        self,
        channel: paramiko.Channel,
        executor: ThreadPoolExecutor,
        *,
        split: bool,
        chunk_size: int,
    ) -> None:
        self._channel = channel
        self._executor = executor
        self.readers: List[_ChannelReader] = [_ChannelReader(channel.recv, executor, chunk_size)]
        if split:
            self.readers.append(_ChannelReader(channel.recv_stderr, executor, chunk_size))

    async def kill(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._channel.close)


def _map_sftp_error(exc: Exception, path: str) -> errors.DevLinkError:
    if isinstance(exc, errors.DevLinkError):
        return exc
    details = {"path": path}
    code = getattr(exc, "errno", None)
    if code == errno.ENOENT:
        return errors.PathNotFoundError(f"No such file or directory: {path}", details=details, cause=exc)
    if code in (errno.EACCES, errno.EPERM):
        return errors.PermissionError(f"Permission denied: {path}", details=details, cause=exc)
    if isinstance(exc, (EOFError, paramiko.SSHException)):
        return errors.TransportLostError(f"Connection lost while accessing {path}: {exc}", details=details, cause=exc)
    return errors.ChannelIOError(f"I/O error on {path}: {exc}", details=details, cause=exc)


class SFTPSyncChannel:
    """One SFTP session used for exactly one list, read or write."""

    def __init__(self, sftp: paramiko.SFTPClient, executor: ThreadPoolExecutor, *, chunk_size: int) -> None:
        self._sftp = sftp
        self._executor = executor
        self._chunk_size = chunk_size

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def list(self, path: str) -> AsyncIterator[RawDirEntry]:
        try:
            entries = self._sftp.listdir_iter(path)
            while True:
                attr = await self._call(next, entries, _END)
                if attr is _END:
                    break
                yield RawDirEntry(
                    name=attr.filename,
                    mode=attr.st_mode or 0,
                    size=attr.st_size or 0,
                    mtime=int(attr.st_mtime or 0),
                )
        except _SFTP_ERRORS as exc:
            raise _map_sftp_error(exc, path) from exc

    async def read(self, path: str) -> AsyncIterator[bytes]:
        try:
            remote = await self._call(self._sftp.open, path, "rb")
        except _SFTP_ERRORS as exc:
            raise _map_sftp_error(exc, path) from exc
        try:
            while True:
                try:
                    chunk = await self._call(remote.read, self._chunk_size)
                except _SFTP_ERRORS as exc:
                    raise _map_sftp_error(exc, path) from exc
                if not chunk:
                    break
                yield chunk
        finally:
            await self._call(remote.close)

    async def write(
        self,
        path: str,
        source: AsyncIterator[bytes],
        permission: Optional[int] = None,
    ) -> None:
        try:
            remote = await self._call(self._sftp.open, path, "wb")
        except _SFTP_ERRORS as exc:
            raise _map_sftp_error(exc, path) from exc
        try:
            # errors raised by the local source propagate unmapped
            async for chunk in source:
                try:
                    await self._call(remote.write, chunk)
                except _SFTP_ERRORS as exc:
                    raise _map_sftp_error(exc, path) from exc
        finally:
            await self._call(remote.close)
        if permission is not None:
            try:
                await self._call(self._sftp.chmod, path, permission)
            except _SFTP_ERRORS as exc:
                raise _map_sftp_error(exc, path) from exc

    async def dispose(self) -> None:
        await self._call(self._sftp.close)
