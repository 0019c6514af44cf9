"""File queue awaiting conversion."""

import ntpath
from typing import Iterable, List, Optional
from .models import QueueEntry, file_ext

SUPPORTED_INPUT_EXTENSIONS = frozenset({"mkv", "mp4", "avi", "mov", "wmv", "flv", "webm"})


def is_supported(path: str) -> bool:
    return file_ext(path) in SUPPORTED_INPUT_EXTENSIONS


def path_key(path: str) -> str:
    """Comparison key treating case and separator differences as the same path."""
    return ntpath.normpath(path.replace("/", "\\")).lower()


class JobQueue:
    """Ordered, de-duplicated list of files; insertion order is dispatch order."""

    def __init__(self, entries: Optional[Iterable[QueueEntry]] = None):
        self._entries: List[QueueEntry] = []
        if entries:
            self.enqueue(entry.path for entry in entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def enqueue(self, paths: Iterable[str]) -> int:
        """Add files to the end of the queue.

        Duplicates (within the call or already queued) and unsupported
        extensions are dropped.

        Returns:
            Number of entries actually added.
        """
        seen = {path_key(entry.path) for entry in self._entries}
        added = 0
        for path in paths:
            if not path or not is_supported(path):
                continue
            key = path_key(path)
            if key in seen:
                continue
            seen.add(key)
            self._entries.append(QueueEntry.from_path(path))
            added += 1
        return added

    def dequeue_all(self) -> List[QueueEntry]:
        """Remove and return every entry in queue order."""
        drained, self._entries = self._entries, []
        return drained

    def remove(self, index: int) -> QueueEntry:
        """Remove the entry at index."""
        if index < 0 or index >= len(self._entries):
            raise IndexError(f"Queue index {index} out of range")
        return self._entries.pop(index)

    def clear(self) -> None:
        """Remove every entry."""
        self._entries = []
