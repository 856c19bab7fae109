from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, List

from tracetap.models import LogEntry


class RetentionStore:
    """
    Per-service sliding window of the most recent entries.
    Each service keeps at most `max_per_service` entries; the oldest go first.
    """

    def __init__(self, max_per_service: int = 1000):
        if max_per_service <= 0:
            raise ValueError("max_per_service must be positive")
        self.max_per_service = max_per_service
        self._logs: Dict[str, Deque[LogEntry]] = {}
        self._lock = threading.Lock()

    def put(self, entry: LogEntry) -> LogEntry:
        entry = entry.with_service_fallback()
        with self._lock:
            buf = self._logs.get(entry.service)
            if buf is None:
                buf = deque(maxlen=self.max_per_service)
                self._logs[entry.service] = buf
            buf.append(entry)
        return entry

    def get_all(self) -> Dict[str, List[LogEntry]]:
        with self._lock:
            return {svc: list(buf) for svc, buf in self._logs.items()}

    def get_service(self, service: str) -> List[LogEntry]:
        with self._lock:
            buf = self._logs.get(service)
            return list(buf) if buf else []

    def clear_service(self, service: str) -> None:
        with self._lock:
            self._logs[service] = deque(maxlen=self.max_per_service)

    def services(self) -> List[str]:
        with self._lock:
            return list(self._logs)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(buf) for buf in self._logs.values())
