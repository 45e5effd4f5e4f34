"""Stateful cursor over the remote filesystem."""

from __future__ import annotations

import logging
from typing import List

from .fileops import ROOT, FsEntry, join_path, normalize_path, parent_path, sort_entries
from .sync import SyncGateway

logger = logging.getLogger(__name__)


class FileBrowser:
    """Lists directories through a :class:`SyncGateway` and tracks the cwd.

    Gateway failures are raised unchanged and leave the cursor where it was.
    """

    def __init__(self, gateway: SyncGateway, initial_path: str = ROOT) -> None:
        self._gateway = gateway
        self.current_path = normalize_path(initial_path)
        self.entries: List[FsEntry] = []

    normalize = staticmethod(normalize_path)
    up = staticmethod(parent_path)
    join = staticmethod(join_path)

    async def list(self, path: str) -> List[FsEntry]:
        directory = normalize_path(path)
        entries = [entry async for entry in self._gateway.list(directory)]
        logger.debug(f"Listed {len(entries)} entries in {directory}")
        return sort_entries(entries)

    async def navigate(self, path: str) -> List[FsEntry]:
        directory = normalize_path(path)
        entries = await self.list(directory)
        self.current_path = directory
        self.entries = entries
        return entries

    async def refresh(self) -> List[FsEntry]:
        return await self.navigate(self.current_path)

    async def go_up(self) -> List[FsEntry]:
        return await self.navigate(parent_path(self.current_path))

    async def enter(self, entry: FsEntry) -> List[FsEntry]:
        if not entry.is_dir:
            raise NotADirectoryError(f"Not a directory: {entry.path}")
        return await self.navigate(entry.path)

    def reset(self) -> None:
        self.current_path = ROOT
        self.entries = []
