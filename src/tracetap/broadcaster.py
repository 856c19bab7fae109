from __future__ import annotations

import asyncio
import itertools
import threading
from typing import List, Set, Tuple

from tracetap import diagnostics
from tracetap.models import LogEntry
from tracetap.storage import RetentionStore

_viewer_ids = itertools.count(1)


class Viewer:
    """
    One live subscriber. Entries are queued on the viewer's own event loop and
    drained by the connection that owns it; offer() is safe from any thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 5000, label: str = ""):
        self.id = next(_viewer_ids)
        self.label = label or f"viewer-{self.id}"
        self.loop = loop
        self.queue: "asyncio.Queue[LogEntry]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, entry: LogEntry) -> None:
        try:
            self.queue.put_nowait(entry)
        except asyncio.QueueFull:
            # slow consumer; drop for this viewer only
            self.dropped += 1
            diagnostics.log(diagnostics.LEVEL_WARN, "BROADCAST",
                            f"{self.label} queue full, dropped entry ({self.dropped} total)")

    def offer(self, entry: LogEntry) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._put(entry)
        else:
            self.loop.call_soon_threadsafe(self._put, entry)

    async def get(self) -> LogEntry:
        return await self.queue.get()


class Broadcaster:
    """
    Tracks live viewers and fans new entries out to them.

    publish() stores and enqueues under the same lock that subscribe() holds
    while it registers a viewer and snapshots the store, so each entry reaches
    a new viewer exactly once: through the backlog or through its queue.
    """

    def __init__(self, store: RetentionStore, queue_size: int = 5000):
        self.store = store
        self.queue_size = queue_size
        self._viewers: Set[Viewer] = set()
        self._lock = threading.Lock()

    def subscribe(self, label: str = "") -> Tuple[Viewer, List[LogEntry]]:
        """Register a viewer on the running loop; returns it with the backlog to replay."""
        viewer = Viewer(asyncio.get_running_loop(), maxsize=self.queue_size, label=label)
        with self._lock:
            snapshot = self.store.get_all()
            self._viewers.add(viewer)
        backlog = [entry for entries in snapshot.values() for entry in entries]
        diagnostics.log(diagnostics.LEVEL_DEBUG, "BROADCAST",
                        f"{viewer.label} joined, replaying {len(backlog)} entries")
        return viewer, backlog

    def unsubscribe(self, viewer: Viewer) -> None:
        with self._lock:
            self._viewers.discard(viewer)
        diagnostics.log(diagnostics.LEVEL_DEBUG, "BROADCAST", f"{viewer.label} left")

    def publish(self, entry: LogEntry) -> LogEntry:
        with self._lock:
            stored = self.store.put(entry)
            self._fan_out(stored)
        return stored

    def broadcast(self, entry: LogEntry) -> None:
        with self._lock:
            self._fan_out(entry)

    def _fan_out(self, entry: LogEntry) -> None:
        for viewer in list(self._viewers):
            try:
                viewer.offer(entry)
            except RuntimeError as e:
                # viewer's loop is gone
                diagnostics.log(diagnostics.LEVEL_WARN, "BROADCAST", f"{viewer.label} unreachable: {e}")
                self._viewers.discard(viewer)

    def viewer_count(self) -> int:
        with self._lock:
            return len(self._viewers)
