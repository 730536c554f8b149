"""Durable key/value storage for the operator-side timer record."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger("benchtimer.local_storage")

ACTIVE_TIMER_KEY = "active_timer"


class LocalTimerStorage(ABC):
    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def set(self, key: str, value: dict[str, Any]) -> None: ...

    @abstractmethod
    def remove(self, key: str) -> None: ...


class MemoryTimerStorage(LocalTimerStorage):
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        # Stored serialized so callers never share a mutable dict.
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileTimerStorage(LocalTimerStorage):
    """One JSON document per operator; survives process restarts.

    Writes go to a temporary file that replaces the document, so a crash
    mid-write leaves the previous content in place.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("local_storage.corrupt", extra={"extra_data": {"path": str(self.path)}})
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not data:
            self.path.unlink(missing_ok=True)
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, separators=(",", ":")), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if key in data:
                data.pop(key)
                self._write_all(data)
