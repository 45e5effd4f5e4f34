"""Remote process handles and the dual-channel merge read."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Sequence, Tuple

from .errors import DevLinkError, SpawnError
from .transport import ByteReader, DeviceTransport, RawProcess

logger = logging.getLogger(__name__)


class Role(Enum):
    """Execution slots; each holds at most one live process."""

    LOG_TAIL = "log-tail"
    COMMAND = "command"


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


async def best_effort(action: Callable[[], Awaitable[object]], what: str) -> None:
    """Await ``action`` and log any failure; cleanup never propagates errors."""
    try:
        await action()
    except Exception as exc:
        logger.warning(f"Ignoring failure during {what}: {exc}")


def release_readers(readers: Sequence[ByteReader], what: str) -> None:
    """Release every reader; a failing release is logged and skipped."""
    for reader in readers:
        try:
            reader.release()
        except Exception as exc:
            logger.warning(f"Ignoring failure releasing {what} reader: {exc}")


def shell_command(text: str) -> List[str]:
    """Wrap user input for ``sh -c``.

    The input is only wrapped in double quotes, it is not escaped. This is not
    a safety boundary against shell injection.
    """
    return ["sh", "-c", f'"{text}"']


class StreamProcess:
    """One remote-executed command tagged with the role it was started for."""

    def __init__(self, role: Role, argv: Sequence[str], raw: RawProcess) -> None:
        self.role = role
        self.argv = list(argv)
        self._raw = raw
        self.readers: List[ByteReader] = list(raw.readers)
        if not 1 <= len(self.readers) <= 2:
            raise SpawnError(
                f"Expected one or two output channels, got {len(self.readers)}",
                details={"role": role.value},
            )
        self._released = False

    @property
    def split(self) -> bool:
        return len(self.readers) == 2

    @property
    def stream_names(self) -> Tuple[str, ...]:
        return ("stdout", "stderr") if self.split else ("output",)

    @property
    def released(self) -> bool:
        return self._released

    async def kill(self) -> None:
        await self._raw.kill()

    async def cancel_readers(self) -> None:
        for reader in self.readers:
            await best_effort(reader.cancel, f"{self.role.value} reader cancel")

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        release_readers(self.readers, self.role.value)

    def __repr__(self) -> str:
        return f"StreamProcess(role={self.role.value!r}, argv={self.argv!r})"


async def spawn_process(
    transport: DeviceTransport,
    role: Role,
    argv: Sequence[str],
    *,
    split_streams: bool = True,
) -> StreamProcess:
    """Start ``argv`` on the device; split stdout/stderr when supported."""
    split = split_streams and transport.supports_split_streams
    logger.info(f"Spawning {role.value} process {list(argv)!r} (split={split})")
    try:
        raw = await transport.spawn(list(argv), split_streams=split)
    except DevLinkError as exc:
        if isinstance(exc, SpawnError) or exc.fatal:
            raise
        raise SpawnError(f"Could not start {role.value}: {exc}", cause=exc) from exc
    except Exception as exc:
        raise SpawnError(f"Could not start {role.value}: {exc}", cause=exc) from exc
    return StreamProcess(role, argv, raw)


async def merge_channels(readers: Sequence[ByteReader]) -> AsyncIterator[Tuple[int, bytes]]:
    """
    Yield ``(reader_index, chunk)`` from whichever reader produces data first.

    Ends once every reader has reported end-of-stream. No reordering buffer is
    kept, so interleaving across readers is best-effort. A read failure on any
    reader propagates after the other pending reads are cancelled.
    """
    pending: dict[asyncio.Future, int] = {
        asyncio.ensure_future(reader.read()): index for index, reader in enumerate(readers)
    }
    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in sorted(done, key=lambda f: pending[f]):
                index = pending.pop(future)
                chunk = future.result()
                if chunk is None:
                    continue
                pending[asyncio.ensure_future(readers[index].read())] = index
                if chunk:
                    yield index, chunk
    finally:
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
