"""Transfer progress tracking and bounded head reads."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from .fileops import format_size

logger = logging.getLogger(__name__)


class Direction(Enum):
    PUSH = "push"
    PULL = "pull"


class TransferStatus(Enum):
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransferTask:
    """State of one push or pull. Mutated only through a TransferTracker."""

    direction: Direction
    path: str
    total_bytes: Optional[int] = None
    sent_bytes: int = 0
    status: TransferStatus = TransferStatus.ACTIVE
    error: Optional[BaseException] = None


class TransferTracker:
    """Turn a running byte counter into monotonic progress reports."""

    def __init__(
        self,
        task: TransferTask,
        on_progress: Optional[Callable[[TransferTask, Optional[float]], None]] = None,
    ) -> None:
        self.task = task
        self._on_progress = on_progress
        self._fraction: Optional[float] = 0.0 if self._total_known else None

    @property
    def _total_known(self) -> bool:
        return self.task.total_bytes is not None

    @property
    def fraction(self) -> Optional[float]:
        """Progress in [0, 1], or ``None`` when the total size is unknown."""
        return self._fraction

    def update(self, sent_bytes: int) -> None:
        if self.task.status is not TransferStatus.ACTIVE:
            return
        self.task.sent_bytes = max(self.task.sent_bytes, sent_bytes)
        if self._total_known:
            total = self.task.total_bytes
            current = min(self.task.sent_bytes / total, 1.0) if total else 0.0
            self._fraction = max(self._fraction or 0.0, current)
        self._notify()

    def complete(self) -> None:
        if self.task.status is not TransferStatus.ACTIVE:
            return
        self.task.status = TransferStatus.DONE
        if self._total_known:
            self._fraction = 1.0
        logger.info(
            f"{self.task.direction.value} {self.task.path} complete "
            f"({format_size(self.task.sent_bytes)})"
        )
        self._notify()

    def fail(self, error: BaseException) -> None:
        if self.task.status is not TransferStatus.ACTIVE:
            return
        self.task.status = TransferStatus.FAILED
        self.task.error = error
        logger.info(f"{self.task.direction.value} {self.task.path} failed: {error}")
        self._notify()

    def describe(self) -> str:
        sent = format_size(self.task.sent_bytes)
        if self._total_known:
            return f"{sent} of {format_size(self.task.total_bytes)}"
        return sent

    def _notify(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.task, self._fraction)


async def read_head(chunks: AsyncIterator[bytes], limit: int) -> bytes:
    """
    Collect at most ``limit`` bytes from ``chunks``.

    The chunk crossing the budget is truncated and no further chunk is
    requested. The source is closed before returning.
    """
    collected = bytearray()
    try:
        if limit > 0:
            async for chunk in chunks:
                collected += chunk[: limit - len(collected)]
                if len(collected) >= limit:
                    break
    finally:
        await _close(chunks)
    return bytes(collected)


async def _close(chunks: AsyncIterator[bytes]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()
