"""Remote path and directory entry helpers for devlink."""

from __future__ import annotations

import posixpath
import stat
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from .transport import RawDirEntry

ROOT = "/"


@dataclass(frozen=True)
class FsEntry:
    """Light weight description of a remote directory entry."""

    name: str
    mode: int
    size: int
    mtime: int
    path: str

    @property
    def is_dir(self) -> bool:
        return is_dir_mode(self.mode)

    @classmethod
    def from_raw(cls, directory: str, raw: RawDirEntry) -> "FsEntry":
        return cls(
            name=raw.name,
            mode=int(raw.mode),
            size=max(int(raw.size), 0),
            mtime=int(raw.mtime),
            path=join_path(directory, raw.name),
        )


def is_dir_mode(mode: int) -> bool:
    """Return ``True`` when the POSIX mode describes a directory."""

    return stat.S_IFMT(mode) == stat.S_IFDIR


def normalize_path(path: Optional[str]) -> str:
    """Return an absolute, slash separated path without trailing slash."""

    if not path:
        return ROOT
    cleaned = posixpath.normpath("/" + path.strip().replace("\\", "/"))
    # normpath keeps a leading "//" as POSIX allows it
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def parent_path(path: Optional[str]) -> str:
    """Return the parent directory; the parent of root is root."""

    return posixpath.dirname(normalize_path(path)) or ROOT


def join_path(base: Optional[str], name: str) -> str:
    return normalize_path(posixpath.join(normalize_path(base), name.lstrip("/")))


def base_name(path: str) -> str:
    return posixpath.basename(normalize_path(path)) or ROOT


def sort_entries(entries: Iterable[FsEntry]) -> List[FsEntry]:
    """Directories first, then case-insensitive name order."""

    def sort_key(entry: FsEntry):
        return (not entry.is_dir, entry.name.casefold(), entry.name)

    return sorted(entries, key=sort_key)


def format_size(n: int) -> str:
    """Convert bytes to human readable format."""
    if n < 1024:
        return f"{n} B"
    value = float(n)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1024
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if value >= 10 else f"{value:.1f} {unit}"
    return f"{n} B"


def format_mtime(seconds: float) -> str:
    """Convert timestamp to human readable format."""
    try:
        return datetime.fromtimestamp(seconds).strftime("%Y-%m-%d %H:%M")
    except (OverflowError, OSError, ValueError):
        return str(seconds)


def mode_to_str(mode: int) -> str:
    """Convert file mode to string representation like -rw-r--r--."""
    kind = "d" if is_dir_mode(mode) else "-"
    perm = ""
    for shift in (6, 3, 0):
        perm += "r" if mode & (4 << shift) else "-"
        perm += "w" if mode & (2 << shift) else "-"
        perm += "x" if mode & (1 << shift) else "-"
    return kind + perm
