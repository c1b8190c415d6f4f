"""Filesystem registry of segment files produced by the recording backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable

__all__ = [
    "SegmentFile",
    "SegmentStore",
]


@dataclass(frozen=True, slots=True)
class SegmentFile:
    """A file on disk, identified by its name inside the output directory."""

    name: str
    full_path: str
    size_bytes: int
    mtime: float

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "fullPath": self.full_path,
            "size": _format_size(self.size_bytes),
            "sizeBytes": self.size_bytes,
            "mtime": self.mtime,
            "date": datetime.fromtimestamp(self.mtime).isoformat(timespec="seconds"),
        }


class SegmentStore:
    """Resolves segment names against one output directory.

    The store never caches file state: every lookup stats the filesystem,
    since the backend may be writing into the same directory.
    """

    def __init__(self, root: Path | str, extensions: Iterable[str]) -> None:
        self.root = Path(root)
        self.extensions = tuple(ext.lower() for ext in extensions)
        self._log = logging.getLogger("segment_store")

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path | None:
        """Return the path ``name`` refers to, or None for names that escape the root."""
        if not name or name in {".", ".."}:
            return None
        if "/" in name or "\\" in name or "\x00" in name:
            return None
        return self.root / name

    def resolve(self, name: str) -> SegmentFile | None:
        path = self.path_for(name)
        if path is None:
            return None
        return self._stat_entry(path)

    def exists(self, name: str) -> bool:
        return self.resolve(name) is not None

    def is_video(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def list_segments(self) -> list[SegmentFile]:
        """Return video files in the output directory, newest first."""
        try:
            candidates = list(self.root.iterdir())
        except FileNotFoundError:
            return []
        entries: list[SegmentFile] = []
        for candidate in candidates:
            if not self.is_video(candidate):
                continue
            entry = self._stat_entry(candidate)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda item: item.mtime, reverse=True)
        return entries

    def newest_segment(self) -> SegmentFile | None:
        """Most recently modified video file; racy, so only a fallback source."""
        entries = self.list_segments()
        if not entries:
            return None
        newest = entries[0]
        self._log.debug("Newest segment by mtime: %s", newest.name)
        return newest

    def _stat_entry(self, path: Path) -> SegmentFile | None:
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            self._log.warning("Unable to stat %s: %s", path, exc)
            return None
        if not path.is_file():
            return None
        return SegmentFile(
            name=path.name,
            full_path=str(path.resolve()),
            size_bytes=st.st_size,
            mtime=st.st_mtime,
        )


def _format_size(size_bytes: int) -> str:
    return f"{size_bytes / 1024 / 1024:.1f} MB"
