"""Persistent key-value storage using JSON files."""

import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Union
from pydantic import ValidationError
from .models import Preferences, QueueEntry

logger = logging.getLogger(__name__)


class Storage:
    """File-based storage, one JSON document per record key."""

    def __init__(self, data_dir: Union[str, Path] = ".convertctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file, returning None when missing or unreadable."""
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable record %s: %s", file_path.name, e)
            return None

    def get(self, key: str) -> Any:
        """Get a stored record, or None."""
        return self._read_json(self._path(key))

    def put(self, key: str, value: Any) -> None:
        """Store a record, replacing any previous value."""
        self._write_json(self._path(key), value)

    def get_queue(self) -> List[QueueEntry]:
        """Get the persisted file queue."""
        data = self.get("queue")
        if not isinstance(data, list):
            return []
        entries = []
        for item in data:
            try:
                entries.append(QueueEntry(**item))
            except (TypeError, ValidationError):
                logger.warning("Dropping malformed queue entry: %r", item)
        return entries

    def set_queue(self, entries: List[QueueEntry]) -> None:
        """Persist the file queue."""
        self.put("queue", [entry.model_dump() for entry in entries])


class PreferenceStore:
    """Write-through store for user preferences."""

    KEY = "preferences"

    def __init__(self, storage: Storage):
        self.storage = storage
        self._cached: Optional[Preferences] = None

    def load(self) -> Preferences:
        """Load preferences, falling back to defaults for missing or invalid data."""
        if self._cached is not None:
            return self._cached
        data = self.storage.get(self.KEY)
        prefs = Preferences()
        if isinstance(data, dict):
            try:
                prefs = Preferences(**data)
            except ValidationError as e:
                logger.warning("Stored preferences are invalid, using defaults: %s", e)
        self._cached = prefs
        return prefs

    def save(self, prefs: Preferences) -> None:
        """Persist preferences immediately."""
        self.storage.put(self.KEY, prefs.model_dump(mode="json"))
        self._cached = prefs

    def update(self, persist: bool = True, **changes: Any) -> Preferences:
        """Validate a partial update and, unless persist is False, write it through."""
        current = self.load()
        prefs = Preferences(**{**current.model_dump(), **changes})
        if persist:
            self.save(prefs)
        return prefs
