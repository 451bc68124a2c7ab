"""Tracks component health of a client and broadcasts snapshots."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from enum import Enum

_BUFFER_SIZE = 100
_STOP = object()


class Status(Enum):
    """Health status of a client component."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ElectorStatus(Enum):
    """Leadership status of the client's elector."""

    NON_LEADER = "non_leader"
    LEADER = "leader"
    RESIGNING = "resigning"


@dataclass
class ClientSnapshot:
    """Point-in-time view of the status of every client component."""

    elector: ElectorStatus = ElectorStatus.NON_LEADER
    notifier: Status = Status.UNINITIALIZED
    producers: dict[str, Status] = field(default_factory=dict)

    def copy(self) -> ClientSnapshot:
        """A snapshot that shares no mutable state with this one."""
        return ClientSnapshot(self.elector, self.notifier, dict(self.producers))

    def healthy(self) -> bool:
        """True when the notifier and every producer are healthy."""
        return self.notifier is Status.HEALTHY and all(
            status is Status.HEALTHY for status in self.producers.values()
        )


class ClientMonitor:
    """Collects component status changes and fans snapshots out to subscribers."""

    def __init__(self) -> None:
        self._buffer: queue.Queue = queue.Queue(maxsize=_BUFFER_SIZE)
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue] = []
        self._current = ClientSnapshot()
        self._shutdown = threading.Event()
        self._done = threading.Event()

    def run(self) -> None:
        """Broadcast buffered updates until shutdown is requested."""
        try:
            while not self._shutdown.is_set():
                try:
                    item = self._buffer.get(timeout=0.1)
                except queue.Empty:
                    continue
                if item is _STOP:
                    break
                snapshot, subscribers = item
                for sub in subscribers:
                    try:
                        sub.put_nowait(snapshot)
                    except queue.Full:
                        pass  # subscriber too slow; update dropped
        finally:
            self._done.set()

    def shutdown(self) -> None:
        """Stop the monitor and block until run has returned."""
        self._shutdown.set()
        try:
            self._buffer.put_nowait(_STOP)
        except queue.Full:
            pass
        self._done.wait()

    def initialize_producer_status(self, queue_name: str) -> None:
        """Mark a producer uninitialised without broadcasting; for startup only."""
        self._current.producers[queue_name] = Status.UNINITIALIZED

    def set_producer_status(self, queue_name: str, status: Status) -> None:
        with self._lock:
            self._current.producers[queue_name] = status
            self._buffer_update()

    def set_elector_status(self, status: ElectorStatus) -> None:
        with self._lock:
            self._current.elector = status
            self._buffer_update()

    def set_notifier_status(self, status: Status) -> None:
        with self._lock:
            self._current.notifier = status
            self._buffer_update()

    def register_updates(self) -> queue.Queue:
        """Return a bounded queue that will receive future snapshots."""
        subscriber: queue.Queue = queue.Queue(maxsize=_BUFFER_SIZE)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def _buffer_update(self) -> None:
        # Caller holds the lock.
        item = (self._current.copy(), list(self._subscribers))
        try:
            self._buffer.put_nowait(item)
        except queue.Full:
            pass