"""One device session: the operations a front end drives."""

from __future__ import annotations

import asyncio
import logging
import pathlib
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from .browser import FileBrowser
from .config import SessionConfig
from .connection import Connection
from .controller import ProcessController, RunningProcess
from .errors import DevLinkError, NotConnectedError, ReadError, SpawnError
from .fileops import FsEntry, base_name, format_size, join_path
from .process import (
    ProcessState,
    Role,
    best_effort,
    merge_channels,
    release_readers,
    shell_command,
)
from .sync import SyncGateway
from .transfer import Direction, TransferTask, TransferTracker, read_head
from .transport import Authenticator, RawProcess

logger = logging.getLogger(__name__)

_ROLE_LABELS = {Role.LOG_TAIL: "logread", Role.COMMAND: "command"}


class SessionListener:
    """Receives session events. Override the hooks a front end needs."""

    def on_log(self, line: str) -> None:
        pass

    def on_connection_changed(self, connected: bool) -> None:
        pass

    def on_output(self, role: Role, stream: str, text: str) -> None:
        pass

    def on_process_state(self, role: Role, state: ProcessState) -> None:
        pass

    def on_directory_loaded(self, path: str, entries: List[FsEntry]) -> None:
        pass

    def on_progress(self, task: TransferTask, fraction: Optional[float]) -> None:
        pass


class DeviceSession:
    """
    Connection, process slots, sync gateway and browser for one device.

    All state lives on the instance, so independent sessions (and tests) do
    not share anything. Failures are reported through
    :meth:`SessionListener.on_log` and re-raised to the caller; a fatal
    transport failure also disconnects the session.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        device_id: str,
        credentials: Any = None,
        *,
        config: Optional[SessionConfig] = None,
        listener: Optional[SessionListener] = None,
    ) -> None:
        self._authenticator = authenticator
        self.device_id = device_id
        self._credentials = credentials
        self.config = config or SessionConfig()
        self.listener = listener or SessionListener()
        self._connection: Optional[Connection] = None
        self.processes: Optional[ProcessController] = None
        self.sync: Optional[SyncGateway] = None
        self.browser: Optional[FileBrowser] = None
        # serializes connect/disconnect so at most one Connection is live
        self._lifecycle = asyncio.Lock()
        self._quick: Dict[asyncio.Task, Tuple[str, RawProcess]] = {}
        self._disconnect_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.is_open

    # -- connection -------------------------------------------------------

    async def connect(self) -> None:
        async with self._lifecycle:
            if self.connected:
                logger.info(f"Already connected to {self.device_id}")
                return

            connection = Connection(self._authenticator, self.device_id, self._credentials)
            self._log(f"Connecting to {self.device_id}…")
            try:
                transport = await connection.open()
            except DevLinkError as exc:
                self._log(f"Connect failed: {exc}")
                self.listener.on_connection_changed(False)
                raise

            self._connection = connection
            self.processes = ProcessController(
                transport,
                split_streams=self.config.split_streams,
                stop_timeout=self.config.stop_timeout,
                on_output=self.listener.on_output,
                on_state=self.listener.on_process_state,
                on_exit=self._on_process_exit,
            )
            self.sync = SyncGateway(transport)
            self.browser = FileBrowser(self.sync, self.config.initial_path)
            # quick commands and processes first, then the sync channel, then the transport
            connection.add_shutdown_hook(self._stop_quick)
            connection.add_shutdown_hook(self.processes.stop_all)
            connection.add_shutdown_hook(self.sync.close)

            self._log("Connected!")
            self.listener.on_connection_changed(True)

        try:
            await self.navigate(self.config.initial_path)
        except DevLinkError:
            # already reported; the session stays usable
            pass

    async def disconnect(self) -> None:
        async with self._lifecycle:
            connection, self._connection = self._connection, None
            if connection is None:
                return
            await connection.close()
            self.processes = None
            self.sync = None
            self.browser = None
            self.listener.on_connection_changed(False)
            self._log("Disconnected.")

    # -- processes --------------------------------------------------------

    async def start_log_tail(self) -> RunningProcess:
        processes = self._require(self.processes)
        async with self._operation("start logread"):
            record = await processes.start(Role.LOG_TAIL, self.config.log_tail_command)
        self._log("logread started")
        return record

    async def stop_log_tail(self) -> None:
        if self.processes is not None and self.processes.is_active(Role.LOG_TAIL):
            self._log("Stopping logread…")
            await self.processes.stop(Role.LOG_TAIL)

    async def run_command(self, text: str) -> Optional[RunningProcess]:
        processes = self._require(self.processes)
        command = text.strip()
        if not command:
            self._log("Type a command first")
            return None
        self._log(f"> {command}")
        async with self._operation("start command"):
            return await processes.start(Role.COMMAND, shell_command(command))

    async def stop_command(self) -> None:
        if self.processes is not None and self.processes.is_active(Role.COMMAND):
            self._log("Stopping command…")
            await self.processes.stop(Role.COMMAND)

    async def run_quick(self, name: str) -> str:
        """
        Run a configured one-shot command.

        Returns the stripped first output chunk, or ``""`` for commands listed
        in ``quick_no_output``. The command keeps running on the device; its
        channel is drained and closed in the background.
        """
        command = self.config.quick_commands.get(name)
        if command is None:
            raise KeyError(f"Unknown quick command: {name}")
        transport = self._require(self._connection).transport
        self._log(f"Running {name}")
        chunk: Optional[bytes] = None
        async with self._operation(name):
            try:
                raw = await transport.spawn(["sh", "-c", command], split_streams=False)
            except DevLinkError:
                raise
            except Exception as exc:
                raise SpawnError(f"Could not start {name}: {exc}", cause=exc) from exc
            if name not in self.config.quick_no_output:
                try:
                    chunk = await raw.readers[0].read()
                except DevLinkError:
                    await self._close_quick(name, raw)
                    raise
                except Exception as exc:
                    await self._close_quick(name, raw)
                    raise ReadError(f"{name} read error: {exc}", cause=exc) from exc

        task = asyncio.create_task(self._reap_quick(name, raw), name=f"devlink-quick-{name}")
        self._quick[task] = (name, raw)

        text = (chunk or b"").decode("utf-8", errors="replace").strip()
        if text:
            self._log(text)
        return text

    async def _reap_quick(self, name: str, raw: RawProcess) -> None:
        """Drain a quick command's output until it exits, then close it."""
        try:
            async with aclosing(merge_channels(raw.readers)) as merged:
                async for _ in merged:
                    pass
        except Exception as exc:
            logger.warning(f"{name} output ended with an error: {exc}")
        self._quick.pop(asyncio.current_task(), None)
        await self._close_quick(name, raw)
        logger.debug(f"{name} finished")

    async def _close_quick(self, name: str, raw: RawProcess) -> None:
        await best_effort(raw.kill, f"{name} close")
        for reader in raw.readers:
            await best_effort(reader.cancel, f"{name} reader cancel")
        release_readers(raw.readers, name)

    async def _stop_quick(self) -> None:
        # a reaper cancelled before its first step never runs, so close here
        running, self._quick = self._quick, {}
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        for name, raw in running.values():
            await self._close_quick(name, raw)

    # -- files ------------------------------------------------------------

    async def navigate(self, path: str) -> List[FsEntry]:
        browser = self._require(self.browser)
        async with self._operation(f"list {path}"):
            entries = await browser.navigate(path)
        self.listener.on_directory_loaded(browser.current_path, entries)
        return entries

    async def refresh(self) -> List[FsEntry]:
        browser = self._require(self.browser)
        return await self.navigate(browser.current_path)

    async def go_up(self) -> List[FsEntry]:
        browser = self._require(self.browser)
        return await self.navigate(browser.up(browser.current_path))

    async def push_file(
        self,
        local_path: Union[str, pathlib.Path],
        *,
        permission: Optional[int] = None,
    ) -> TransferTask:
        sync = self._require(self.sync)
        source = pathlib.Path(local_path)
        destination = join_path(self.config.push_dir, source.name)
        total = source.stat().st_size
        tracker = TransferTracker(
            TransferTask(Direction.PUSH, destination, total_bytes=total),
            self.listener.on_progress,
        )
        self._log(f"Pushing to {destination}…")
        async with self._operation("push"):
            try:
                await sync.write(
                    destination,
                    _read_local(source, self.config.chunk_size),
                    total,
                    on_progress=tracker.update,
                    permission=permission,
                )
            except BaseException as exc:
                tracker.fail(exc)
                raise
        tracker.complete()
        self._log("Push complete")
        return tracker.task

    async def preview_head(self, path: str, limit: Optional[int] = None) -> bytes:
        sync = self._require(self.sync)
        limit = self.config.preview_bytes if limit is None else limit
        self._log(f"Reading head of {path}…")
        async with self._operation("preview"):
            data = await read_head(sync.read(path), limit)
        text = data.decode("utf-8", errors="replace")
        self._log(
            f"----- BEGIN {path} (first {len(data)} bytes) -----\n"
            f"{text}\n----- END {base_name(path)} -----"
        )
        return data

    async def download_file(
        self,
        remote_path: str,
        destination: Union[str, pathlib.Path],
        *,
        size_hint: Optional[int] = None,
    ) -> TransferTask:
        sync = self._require(self.sync)
        target = pathlib.Path(destination)
        if target.is_dir():
            target = target / base_name(remote_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tracker = TransferTracker(
            TransferTask(Direction.PULL, remote_path, total_bytes=size_hint),
            self.listener.on_progress,
        )
        loop = asyncio.get_running_loop()
        self._log(f"Downloading {remote_path}…")
        async with self._operation("download"):
            try:
                received = 0
                with target.open("wb") as f:
                    async with aclosing(sync.read(remote_path)) as chunks:
                        async for chunk in chunks:
                            await loop.run_in_executor(None, f.write, chunk)
                            received += len(chunk)
                            tracker.update(received)
            except BaseException as exc:
                tracker.fail(exc)
                try:
                    target.unlink()
                except OSError:
                    logger.warning(f"Could not remove partial download {target}")
                raise
        tracker.complete()
        self._log(f"Downloaded {target.name} ({format_size(tracker.task.sent_bytes)})")
        return tracker.task

    # -- helpers ----------------------------------------------------------

    def _require(self, component):
        if component is None or not self.connected:
            raise NotConnectedError(f"Not connected to {self.device_id}")
        return component

    @asynccontextmanager
    async def _operation(self, what: str) -> AsyncIterator[None]:
        try:
            yield
        except DevLinkError as exc:
            self._log(f"{what} failed: {exc}")
            logger.error(f"{what} failed: {exc}", exc_info=True)
            if exc.fatal:
                await self.disconnect()
            raise
        except OSError as exc:
            # local file errors; the device link is unaffected
            self._log(f"{what} failed: {exc}")
            logger.error(f"{what} failed: {exc}", exc_info=True)
            raise

    def _on_process_exit(self, role: Role, error: Optional[DevLinkError]) -> None:
        if error is not None:
            self._log(f"{_ROLE_LABELS[role]}: {error}")
        self._log(f"{_ROLE_LABELS[role]} ended.")
        if error is not None and error.fatal and self.connected:
            if self._disconnect_task is None or self._disconnect_task.done():
                self._log("Connection lost")
                self._disconnect_task = asyncio.get_running_loop().create_task(
                    self.disconnect(), name="devlink-disconnect"
                )

    def _log(self, line: str) -> None:
        self.listener.on_log(line)


async def _read_local(path: pathlib.Path, chunk_size: int) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    with path.open("rb") as f:
        while True:
            chunk = await loop.run_in_executor(None, f.read, chunk_size)
            if not chunk:
                break
            yield chunk
