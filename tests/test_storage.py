"""Tests for the per-service retention store."""

import threading

import pytest

from tracetap.models import LogEntry
from tracetap.storage import RetentionStore


class TestRetentionStore:
    def test_put_and_get_service(self, make_entry):
        store = RetentionStore(max_per_service=10)
        a, b = make_entry("a"), make_entry("b")
        store.put(a)
        store.put(b)
        assert store.get_service("svc") == [a, b]

    def test_unknown_service_is_empty(self):
        assert RetentionStore().get_service("nope") == []

    def test_evicts_oldest_beyond_cap(self, make_entry):
        store = RetentionStore(max_per_service=1000)
        entries = [make_entry(f"m{i}", service="x") for i in range(1, 1002)]
        for e in entries:
            store.put(e)
        kept = store.get_service("x")
        assert len(kept) == 1000
        assert entries[0] not in kept
        assert kept[0] is entries[1]
        assert kept[-1] is entries[-1]

    def test_cap_is_per_service(self, make_entry):
        store = RetentionStore(max_per_service=2)
        for i in range(5):
            store.put(make_entry(f"a{i}", service="a"))
        store.put(make_entry("b0", service="b"))
        assert [e.message for e in store.get_service("a")] == ["a3", "a4"]
        assert [e.message for e in store.get_service("b")] == ["b0"]
        assert len(store) == 3

    def test_empty_service_stored_as_unknown(self):
        store = RetentionStore()
        stored = store.put(LogEntry(message="orphan"))
        assert stored.service == "UNKNOWN"
        assert store.get_service("UNKNOWN") == [stored]

    def test_snapshots_are_independent(self, make_entry):
        store = RetentionStore()
        store.put(make_entry("a"))
        snap = store.get_all()
        one = store.get_service("svc")
        store.put(make_entry("b"))
        snap["svc"].clear()
        assert len(one) == 1
        assert len(store.get_service("svc")) == 2

    def test_clear_service(self, make_entry):
        store = RetentionStore()
        store.put(make_entry("a", service="a"))
        store.put(make_entry("b", service="b"))
        store.clear_service("a")
        assert store.get_service("a") == []
        assert len(store.get_service("b")) == 1

    def test_rejects_non_positive_cap(self):
        with pytest.raises(ValueError):
            RetentionStore(max_per_service=0)

    def test_concurrent_puts(self, make_entry):
        store = RetentionStore(max_per_service=10_000)

        def writer(n):
            for i in range(500):
                store.put(make_entry(f"{n}-{i}", service="shared"))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        kept = store.get_service("shared")
        assert len(kept) == 4000
        for n in range(8):
            mine = [e.message for e in kept if e.message.startswith(f"{n}-")]
            assert mine == [f"{n}-{i}" for i in range(500)]
