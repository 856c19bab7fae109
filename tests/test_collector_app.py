"""Integration tests for the ingestion and viewer endpoints."""

import json
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tracetap import collector_app
from tracetap.translator import MalformedPayload


def _wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestHttpIngest:
    def test_ingest_scenario(self, client, collector):
        resp = client.post("/ingest", json={"Level": "ERROR", "Message": "boom", "Service": "auth"})
        assert resp.status_code == 200
        assert resp.content == b""

        entries = collector.store.get_service("auth")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.level == "ERROR"
        assert entry.message == "boom"
        assert entry.trace_id == ""
        assert entry.session_id == ""
        assert abs((datetime.now(timezone.utc) - entry.timestamp).total_seconds()) < 5

        assert collector.aggregator.add_log(entry.model_copy()) is False

    def test_resubmission_is_retained_but_aggregated_once(self, client, collector):
        payload = {"Level": "ERROR", "Message": "boom", "Service": "auth"}
        client.post("/ingest", json=payload)
        client.post("/ingest", json=payload)
        assert len(collector.store.get_service("auth")) == 2
        assert len(collector.aggregator.get_logs("auth")) == 1

    def test_missing_service_uses_http_channel(self, client, collector):
        client.post("/ingest", json={"Message": "anon"})
        assert [e.message for e in collector.store.get_service("HTTP")] == ["anon"]

    @pytest.mark.parametrize("method", ["get", "put", "patch", "delete"])
    def test_wrong_method(self, client, collector, method):
        resp = client.request(method.upper(), "/ingest")
        assert resp.status_code == 405
        assert collector.store.get_all() == {}

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b'"text"', b""])
    def test_bad_body(self, client, collector, body):
        resp = client.post("/ingest", content=body, headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert collector.store.get_all() == {}

    def test_translation_failure(self, client, collector, monkeypatch):
        def broken(raw, default_service):
            raise MalformedPayload("nope")

        monkeypatch.setattr(collector_app, "translate", broken)
        resp = client.post("/ingest", json={"Message": "x"})
        assert resp.status_code == 500
        assert collector.store.get_all() == {}
        assert collector.aggregator.get_all_services() == set()

    def test_retention_cap_applies(self, client, collector, config):
        for i in range(config.max_per_service + 3):
            client.post("/ingest", json={"Message": f"m{i}", "Service": "x"})
        kept = [e.message for e in collector.store.get_service("x")]
        assert kept == [f"m{i}" for i in range(3, config.max_per_service + 3)]


class TestReadOnlyViews:
    def test_logs_views(self, client):
        client.post("/ingest", json={"Message": "a", "Service": "s1", "TraceID": "t"})
        client.post("/ingest", json={"Message": "b", "Service": "s2", "env": "dev"})

        all_logs = client.get("/logs").json()
        assert set(all_logs) == {"s1", "s2"}
        assert all_logs["s1"][0]["TraceID"] == "t"
        assert "TraceID" not in all_logs["s2"][0]
        assert all_logs["s2"][0]["Metadata"] == {"env": "dev"}

        assert [e["Message"] for e in client.get("/logs/s2").json()] == ["b"]
        assert client.get("/logs/unknown").json() == []

    def test_services_and_unique(self, client):
        for _ in range(3):
            client.post("/ingest", json={"Message": "dup", "Service": "svc"})
        assert client.get("/services").json() == ["svc"]
        assert len(client.get("/services/svc/unique").json()) == 1
        assert len(client.get("/logs/svc").json()) == 3

    def test_service_logs_dedupe(self, client):
        for payload in [
            {"Message": "a", "Service": "svc", "TraceID": "t1"},
            {"Message": "b", "Service": "svc", "TraceID": "t1"},
            {"Message": "a", "Service": "svc"},
            {"Message": "c", "Service": "svc"},
        ]:
            client.post("/ingest", json=payload)

        by_trace = client.get("/logs/svc", params={"dedupe": "trace"}).json()
        assert [e["Message"] for e in by_trace] == ["a", "a", "c"]

        by_fingerprint = client.get("/logs/svc", params={"dedupe": "fingerprint"}).json()
        assert [e["Message"] for e in by_fingerprint] == ["a", "b", "c"]

        assert len(client.get("/logs/svc").json()) == 4

    def test_service_logs_unknown_dedupe_mode(self, client):
        client.post("/ingest", json={"Message": "a", "Service": "svc"})
        assert client.get("/logs/svc", params={"dedupe": "level"}).status_code == 400

    def test_healthz(self, client):
        client.post("/ingest", json={"Message": "a"})
        body = client.get("/healthz").json()
        assert body == {"ok": True, "retained": 1, "services": 1, "viewers": 0}


class TestWebSocket:
    def test_backlog_then_live(self, client):
        for i in range(3):
            client.post("/ingest", json={"Message": f"old{i}", "Service": "svc"})

        with client.websocket_connect("/ws") as ws:
            backlog = [ws.receive_json()["Message"] for _ in range(3)]
            assert backlog == ["old0", "old1", "old2"]

            client.post("/ingest", json={"Message": "new0", "Service": "svc"})
            client.post("/ingest", json={"Message": "new1", "Service": "svc"})
            assert ws.receive_json()["Message"] == "new0"
            assert ws.receive_json()["Message"] == "new1"

            ws.send_json({"Message": "marker"})
            assert ws.receive_json()["Message"] == "marker"

    def test_ws_ingest_stores_and_broadcasts(self, client, collector):
        with client.websocket_connect("/ws") as watcher:
            with client.websocket_connect("/ws") as producer:
                producer.send_json({"Level": "WARN", "Message": "via ws", "SessionID": "s-1"})
                echoed = producer.receive_json()
                seen = watcher.receive_json()

        assert echoed == seen
        assert seen["Service"] == "WS"
        assert seen["SessionID"] == "s-1"
        assert [e.message for e in collector.store.get_service("WS")] == ["via ws"]
        assert collector.aggregator.get_all_services() == {"WS"}

    def test_malformed_frame_closes_only_that_connection(self, client, collector):
        with client.websocket_connect("/ws") as good:
            with client.websocket_connect("/ws") as bad:
                bad.send_text("{not json")
                with pytest.raises(WebSocketDisconnect) as exc:
                    bad.receive_json()
                assert exc.value.code == collector_app.WS_INVALID_PAYLOAD

            client.post("/ingest", json={"Message": "still flowing"})
            assert good.receive_json()["Message"] == "still flowing"

    def test_disconnect_unregisters_viewer(self, client, collector):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"Message": "hi"})
            ws.receive_json()
            assert collector.broadcaster.viewer_count() == 1
        assert _wait_for(lambda: collector.broadcaster.viewer_count() == 0)

        resp = client.post("/ingest", json={"Message": "after"})
        assert resp.status_code == 200


def test_create_app_reads_env(monkeypatch):
    monkeypatch.setenv("OBS_MAX_PER_SERVICE", "2")
    monkeypatch.setenv("OBS_HTTP_SERVICE", "edge")
    app = collector_app.create_app()
    with TestClient(app) as client:
        for i in range(3):
            client.post("/ingest", json={"Message": f"m{i}"})
        assert [e["Message"] for e in client.get("/logs/edge").json()] == ["m1", "m2"]


class TestServerSentEvents:
    @pytest.mark.asyncio
    async def test_backlog_then_live_then_stop(self, collector, make_entry):
        collector.ingest(make_entry("old"))
        state = {"gone": False}

        async def is_disconnected():
            return state["gone"]

        events = collector_app.sse_events(collector.broadcaster, is_disconnected, keepalive_s=0.05)
        first = await events.__anext__()
        assert json.loads(first[len("data: "):])["Message"] == "old"
        assert collector.broadcaster.viewer_count() == 1

        assert await events.__anext__() == ": keepalive\n\n"

        collector.ingest(make_entry("new"))
        live = await events.__anext__()
        assert json.loads(live[len("data: "):])["Message"] == "new"

        state["gone"] = True
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()
        assert collector.broadcaster.viewer_count() == 0
