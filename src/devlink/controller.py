"""Single-instance-per-role supervision of remote processes."""

from __future__ import annotations

import asyncio
import codecs
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence

from .errors import AlreadyRunningError, DevLinkError, ReadError
from .process import (
    ProcessState,
    Role,
    StreamProcess,
    best_effort,
    merge_channels,
    spawn_process,
)
from .transport import DeviceTransport

logger = logging.getLogger(__name__)

OutputCallback = Callable[[Role, str, str], None]
StateCallback = Callable[[Role, ProcessState], None]
ExitCallback = Callable[[Role, Optional[DevLinkError]], None]


@dataclass(eq=False)
class RunningProcess:
    """Bookkeeping for the process occupying one role slot."""

    role: Role
    argv: Sequence[str]
    state: ProcessState = ProcessState.STARTING
    process: Optional[StreamProcess] = None
    task: Optional[asyncio.Task] = None
    error: Optional[DevLinkError] = None
    stop_requested: bool = False
    stopped: asyncio.Event = field(default_factory=asyncio.Event)


class ProcessController:
    """
    Start, merge output of, and stop remote processes, one per :class:`Role`.

    Output is decoded per channel with an incremental UTF-8 decoder so a
    multi-byte character split across chunks is emitted whole.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        *,
        split_streams: bool = True,
        stop_timeout: float = 5.0,
        on_output: Optional[OutputCallback] = None,
        on_state: Optional[StateCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self._transport = transport
        self._split_streams = split_streams
        self._stop_timeout = stop_timeout
        self._on_output = on_output
        self._on_state = on_state
        self._on_exit = on_exit
        self._slots: Dict[Role, RunningProcess] = {}

    # -- queries ----------------------------------------------------------

    def state(self, role: Role) -> ProcessState:
        record = self._slots.get(role)
        return record.state if record is not None else ProcessState.STOPPED

    def is_active(self, role: Role) -> bool:
        return self.state(role) is not ProcessState.STOPPED

    def current(self, role: Role) -> Optional[RunningProcess]:
        return self._slots.get(role)

    # -- lifecycle --------------------------------------------------------

    async def start(self, role: Role, argv: Sequence[str]) -> RunningProcess:
        if self.is_active(role):
            raise AlreadyRunningError(
                f"A {role.value} process is already running",
                details={"role": role.value, "state": self.state(role).value},
            )

        record = RunningProcess(role=role, argv=list(argv))
        self._slots[role] = record
        self._set_state(record, ProcessState.STARTING)

        try:
            process = await spawn_process(
                self._transport, role, argv, split_streams=self._split_streams
            )
        except BaseException as exc:
            if isinstance(exc, DevLinkError):
                record.error = exc
            self._finish(record)
            raise

        record.process = process
        if record.stop_requested:
            logger.info(f"{role.value} stop requested while starting; killing")
            self._set_state(record, ProcessState.STOPPING)
            await best_effort(process.kill, f"{role.value} kill")
            await process.cancel_readers()
            self._finish(record)
            return record

        self._set_state(record, ProcessState.RUNNING)
        record.task = asyncio.create_task(self._pump(record), name=f"devlink-{role.value}")
        return record

    async def stop(self, role: Role) -> None:
        record = self._slots.get(role)
        if record is None or record.state is ProcessState.STOPPED:
            return

        logger.info(f"Stopping {role.value} process")
        record.stop_requested = True
        if record.process is None:
            # still spawning; start() finishes the teardown
            await record.stopped.wait()
            return

        if record.state is not ProcessState.STOPPING:
            self._set_state(record, ProcessState.STOPPING)
        await best_effort(record.process.kill, f"{role.value} kill")
        await record.process.cancel_readers()

        task = record.task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._stop_timeout)
            if not done:
                logger.warning(f"{role.value} reader did not drain in {self._stop_timeout}s; cancelling")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        await record.stopped.wait()

    async def stop_all(self) -> None:
        for role in list(self._slots):
            await self.stop(role)

    # -- internals --------------------------------------------------------

    async def _pump(self, record: RunningProcess) -> None:
        process = record.process
        assert process is not None
        names = process.stream_names
        decoders = [
            codecs.getincrementaldecoder("utf-8")(errors="replace") for _ in process.readers
        ]
        try:
            async with aclosing(merge_channels(process.readers)) as merged:
                async for index, chunk in merged:
                    self._emit(record.role, names[index], decoders[index].decode(chunk))
        except Exception as exc:
            if record.stop_requested:
                logger.debug(f"{record.role.value} read ended during stop: {exc}")
            elif isinstance(exc, DevLinkError) and exc.fatal:
                record.error = exc
                logger.error(f"{record.role.value} lost the transport: {exc}")
            else:
                record.error = ReadError(
                    f"{record.role.value} read error: {exc}",
                    details={"role": record.role.value},
                    cause=exc,
                )
                logger.error(f"{record.role.value} read failed: {exc}")
        finally:
            try:
                for index, decoder in enumerate(decoders):
                    self._emit(record.role, names[index], decoder.decode(b"", final=True))
            finally:
                self._finish(record)

    def _emit(self, role: Role, stream: str, text: str) -> None:
        if not text or self._on_output is None:
            return
        # a broken output handler is not a device read failure
        try:
            self._on_output(role, stream, text)
        except Exception:
            logger.exception(f"{role.value} output handler failed")

    def _finish(self, record: RunningProcess) -> None:
        if record.state is ProcessState.STOPPED:
            return
        if record.process is not None:
            record.process.release()
        if self._slots.get(record.role) is record:
            del self._slots[record.role]
        self._set_state(record, ProcessState.STOPPED)
        record.stopped.set()
        logger.info(f"{record.role.value} process ended")
        if self._on_exit is not None:
            self._on_exit(record.role, record.error)

    def _set_state(self, record: RunningProcess, state: ProcessState) -> None:
        record.state = state
        if self._on_state is not None:
            self._on_state(record.role, state)
