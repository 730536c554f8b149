"""Named in-process broadcast channels.

A channel delivers every posted message to the *other* channels opened under
the same name on the same hub, never back to the sender. Timer managers of one
operator share a channel name, so a change made through one of them reaches
the rest.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable
from uuid import uuid4

logger = logging.getLogger("benchtimer.channel")

Listener = Callable[[dict[str, Any]], None]


class TimerChannelHub:
    def __init__(self) -> None:
        self._channels: dict[str, list["TimerChannel"]] = defaultdict(list)
        self._lock = threading.Lock()

    def open(self, name: str) -> "TimerChannel":
        channel = TimerChannel(self, name)
        with self._lock:
            self._channels[name].append(channel)
        return channel

    def _detach(self, channel: "TimerChannel") -> None:
        with self._lock:
            peers = self._channels.get(channel.name, [])
            if channel in peers:
                peers.remove(channel)
            if not peers:
                self._channels.pop(channel.name, None)

    def _deliver(self, sender: "TimerChannel", message: dict[str, Any]) -> int:
        with self._lock:
            peers = [c for c in self._channels.get(sender.name, []) if c is not sender]
        for peer in peers:
            peer._receive(message)
        return len(peers)

    def subscriber_count(self, name: str) -> int:
        with self._lock:
            return len(self._channels.get(name, []))


class TimerChannel:
    def __init__(self, hub: TimerChannelHub, name: str) -> None:
        self.hub = hub
        self.name = name
        self.id = uuid4().hex
        self._listeners: list[Listener] = []
        self.closed = False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def post(self, message: dict[str, Any]) -> int:
        """Broadcast ``message``; returns how many peers it reached."""
        if self.closed:
            raise RuntimeError(f"channel {self.name} is closed")
        payload = dict(message)
        payload.setdefault("sender", self.id)
        return self.hub._deliver(self, payload)

    def _receive(self, message: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                # One broken listener must not starve the others.
                logger.exception("channel.listener_failed", extra={"extra_data": {"channel": self.name}})

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._listeners.clear()
            self.hub._detach(self)
