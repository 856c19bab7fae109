from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from tracetap.models import LogEntry

Fingerprint = Tuple[str, str, str]   # (service, level, message)


def fingerprint(entry: LogEntry) -> Fingerprint:
    return (entry.service, entry.level, entry.message)


class _RWLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class Aggregator:
    """
    Deduplicated per-service history.

    Entries with a TraceID are unique by TraceID; entries without one are
    unique by (service, level, message). First occurrence wins. Growth is
    unbounded for the life of the collector.
    """

    def __init__(self):
        self._lock = _RWLock()
        self._logs: Dict[str, List[LogEntry]] = {}
        self._seen_trace_ids: Set[str] = set()
        # service -> fingerprints owned by that service
        self._seen_fingerprints: Dict[str, Set[Fingerprint]] = {}

    def add_log(self, entry: LogEntry) -> bool:
        entry = entry.with_service_fallback()
        with self._lock.write():
            if entry.trace_id:
                if entry.trace_id in self._seen_trace_ids:
                    return False
                self._seen_trace_ids.add(entry.trace_id)
            else:
                fp = fingerprint(entry)
                owned = self._seen_fingerprints.setdefault(entry.service, set())
                if fp in owned:
                    return False
                owned.add(fp)
            self._logs.setdefault(entry.service, []).append(entry)
            return True

    def get_logs(self, service: str) -> List[LogEntry]:
        with self._lock.read():
            return list(self._logs.get(service, ()))

    def get_all_services(self) -> Set[str]:
        with self._lock.read():
            return set(self._logs)

    def clear_service_logs(self, service: str) -> None:
        with self._lock.write():
            self._logs.pop(service, None)
            self._seen_fingerprints.pop(service, None)

    def clear_all(self) -> None:
        with self._lock.write():
            self._logs = {}
            self._seen_trace_ids = set()
            self._seen_fingerprints = {}


# ----------------------------
# Batch helpers
# ----------------------------
def dedupe_by_trace_id(entries: Iterable[LogEntry]) -> List[LogEntry]:
    """Keep the first entry per TraceID; entries without one always pass."""
    seen: Set[str] = set()
    out: List[LogEntry] = []
    for entry in entries:
        if not entry.trace_id:
            out.append(entry)
            continue
        if entry.trace_id not in seen:
            seen.add(entry.trace_id)
            out.append(entry)
    return out


def dedupe_by_fingerprint(entries: Iterable[LogEntry]) -> List[LogEntry]:
    seen: Set[Fingerprint] = set()
    out: List[LogEntry] = []
    for entry in entries:
        fp = fingerprint(entry)
        if fp not in seen:
            seen.add(fp)
            out.append(entry)
    return out
