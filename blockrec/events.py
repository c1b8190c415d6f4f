"""Fan-out of session, merge and connection events to attached listeners."""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
import time
from typing import Any, Callable, Iterable, Set

SnapshotProvider = Callable[[], Iterable[tuple[str, dict[str, Any]]]]


class Listener:
    """Queue-backed receiver for one attached client."""

    def __init__(self, *, max_queue_size: int = 128, name: str = "") -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.closed = False

    def deliver(self, event: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                self.queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; drop newest event for this listener.
                return False
        return True

    async def next_event(self) -> dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True


class BroadcastHub:
    """In-process publisher that delivers each event to every open listener.

    Closed listeners are skipped and nothing is kept for them. A newly
    attached listener gets the current snapshot (connection status, segment
    listing) straight away instead of any event history.
    """

    def __init__(
        self,
        *,
        snapshot: SnapshotProvider | None = None,
        max_queue_size: int = 128,
    ) -> None:
        self._snapshot = snapshot
        self._max_queue_size = max_queue_size
        self._listeners: Set[Listener] = set()
        self._seq = 0
        self._lock = threading.Lock()
        self._log = logging.getLogger("events")

    def set_snapshot_provider(self, snapshot: SnapshotProvider | None) -> None:
        self._snapshot = snapshot

    def attach(self, listener: Listener | None = None) -> Listener:
        if listener is None:
            listener = Listener(max_queue_size=self._max_queue_size)
        with self._lock:
            self._listeners.add(listener)
        if self._snapshot is not None:
            for event_type, data in self._snapshot():
                listener.deliver(self._make_event(event_type, data))
        return listener

    def detach(self, listener: Listener) -> None:
        listener.close()
        with self._lock:
            self._listeners.discard(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return sum(1 for listener in self._listeners if not listener.closed)

    def broadcast(self, event_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        event = self._make_event(event_type, data)
        with self._lock:
            listeners = list(self._listeners)
        delivered = 0
        for listener in listeners:
            if listener.deliver(event):
                delivered += 1
        self._log.debug("Broadcast %s to %d listener(s)", event_type, delivered)
        return event

    def send(self, listener: Listener, event_type: str, data: dict[str, Any] | None = None) -> bool:
        """Deliver an event to one listener only (replies to the issuing client)."""
        return listener.deliver(self._make_event(event_type, data))

    def _make_event(self, event_type: str, data: dict[str, Any] | None) -> dict[str, Any]:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        with self._lock:
            self._seq += 1
            seq = self._seq
        return {
            "id": str(seq),
            "type": event_type,
            "timestamp": time.time(),
            "data": copy.deepcopy(data) if data is not None else {},
        }
