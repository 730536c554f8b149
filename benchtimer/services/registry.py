from __future__ import annotations

import asyncio
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable

from .channel import TimerChannelHub
from .local_storage import JsonFileTimerStorage, LocalTimerStorage, MemoryTimerStorage
from .store import TicketTimeStore
from .timecalc import utcnow
from .timer import TimerLifecycleManager

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def channel_name(operator_id: str) -> str:
    return f"timer:{operator_id}"


class TimerManagerRegistry:
    """Hands out one :class:`TimerLifecycleManager` per operator.

    Managers for the same operator share one local storage and one broadcast
    channel name. ``open_manager`` builds an additional, independent manager
    for the operator (a second tab or device session) wired to the same
    storage and channel. All managers of an operator share one asyncio lock,
    so two tabs cannot interleave a start on different tickets.
    """

    def __init__(
        self,
        store: TicketTimeStore,
        storage_dir: Path | None = None,
        hub: TimerChannelHub | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.storage_dir = Path(storage_dir) if storage_dir is not None else None
        self.hub = hub or TimerChannelHub()
        self._clock = clock
        self._storages: dict[str, LocalTimerStorage] = {}
        self._managers: dict[str, TimerLifecycleManager] = {}
        self._operator_locks: dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()

    def storage_for(self, operator_id: str) -> LocalTimerStorage:
        with self._lock:
            storage = self._storages.get(operator_id)
            if storage is None:
                if self.storage_dir is None:
                    storage = MemoryTimerStorage()
                else:
                    filename = _UNSAFE_CHARS.sub("_", operator_id) + ".json"
                    storage = JsonFileTimerStorage(self.storage_dir / filename)
                self._storages[operator_id] = storage
            return storage

    def lock_for(self, operator_id: str) -> asyncio.Lock:
        with self._lock:
            return self._operator_locks.setdefault(operator_id, asyncio.Lock())

    def open_manager(self, operator_id: str) -> TimerLifecycleManager:
        return TimerLifecycleManager(
            operator_id,
            self.store,
            self.storage_for(operator_id),
            channel=self.hub.open(channel_name(operator_id)),
            clock=self._clock,
            lock=self.lock_for(operator_id),
        )

    def get(self, operator_id: str) -> TimerLifecycleManager:
        with self._lock:
            manager = self._managers.get(operator_id)
        if manager is not None:
            return manager
        manager = self.open_manager(operator_id)
        with self._lock:
            existing = self._managers.setdefault(operator_id, manager)
        if existing is not manager:
            manager.close()
        return existing

    def close(self) -> None:
        with self._lock:
            managers = list(self._managers.values())
            self._managers.clear()
        for manager in managers:
            manager.close()
