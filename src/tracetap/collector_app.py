from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import Response, StreamingResponse

from tracetap import diagnostics
from tracetap.aggregator import Aggregator, dedupe_by_fingerprint, dedupe_by_trace_id
from tracetap.broadcaster import Broadcaster, Viewer
from tracetap.config import CollectorConfig
from tracetap.models import LogEntry
from tracetap.storage import RetentionStore
from tracetap.translator import MalformedPayload, translate

SSE_KEEPALIVE_S = 15.0

# WebSocket close codes
WS_INVALID_PAYLOAD = 1007

DEDUPE_MODES = {
    "trace": dedupe_by_trace_id,
    "fingerprint": dedupe_by_fingerprint,
}


# ----------------------------
# Pipeline
# ----------------------------
class Collector:
    """Everything one collector process owns: store, aggregator, viewers."""

    def __init__(self, config: CollectorConfig):
        self.config = config
        self.store = RetentionStore(max_per_service=config.max_per_service)
        self.aggregator = Aggregator()
        self.broadcaster = Broadcaster(self.store, queue_size=config.viewer_queue)

    def ingest(self, entry: LogEntry) -> LogEntry:
        stored = self.broadcaster.publish(entry)
        self.aggregator.add_log(stored)
        return stored


def _collector(request_or_ws) -> Collector:
    return request_or_ws.app.state.collector


def _wire(entries: List[LogEntry]) -> List[Dict[str, Any]]:
    return [e.to_wire() for e in entries]


# ----------------------------
# App
# ----------------------------
def create_app(config: Optional[CollectorConfig] = None) -> FastAPI:
    config = config or CollectorConfig.from_env()
    diagnostics.configure_logging(config.log_level)

    app = FastAPI(title="tracetap")
    app.state.collector = Collector(config)
    diagnostics.log(diagnostics.LEVEL_INFO, "STORAGE",
                    f"Initializing memory buffer (limit: {config.max_per_service} items per service)")

    # ----------------------------
    # Routes: ingestion
    # ----------------------------
    @app.post("/ingest")
    async def ingest(request: Request):
        collector = _collector(request)
        body = await request.body()
        try:
            raw = json.loads(body)
        except ValueError:
            diagnostics.log(diagnostics.LEVEL_ERROR, "INGEST", "Malformed JSON payload")
            raise HTTPException(400, "Invalid JSON")
        if not isinstance(raw, dict):
            diagnostics.log(diagnostics.LEVEL_ERROR, "INGEST", "Payload is not a JSON object")
            raise HTTPException(400, "Invalid JSON")

        try:
            entry = translate(raw, collector.config.http_service)
        except MalformedPayload as e:
            diagnostics.log(diagnostics.LEVEL_ERROR, "INGEST", f"Translation failure: {e}")
            raise HTTPException(500, "Failed to translate log")

        stored = collector.ingest(entry)
        diagnostics.log(diagnostics.LEVEL_INFO, "INGEST", f"Handled trace for service: {stored.service}")
        return Response(status_code=200)

    @app.api_route("/ingest", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
    async def ingest_wrong_method(request: Request):
        client = request.client.host if request.client else "unknown"
        diagnostics.log(diagnostics.LEVEL_WARN, "INGEST", f"Rejected {request.method} request from {client}")
        raise HTTPException(405, "Method not allowed", headers={"Allow": "POST"})

    @app.websocket("/ws")
    async def ws_channel(ws: WebSocket):
        collector = _collector(ws)
        await ws.accept()
        peer = f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown"
        viewer, backlog = collector.broadcaster.subscribe(label=f"ws {peer}")
        pump: Optional[asyncio.Task] = None
        try:
            for entry in backlog:
                await ws.send_json(entry.to_wire())
            pump = asyncio.create_task(_pump(ws, viewer))

            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                try:
                    entry = translate(data, collector.config.ws_service)
                except MalformedPayload as e:
                    diagnostics.log(diagnostics.LEVEL_WARN, "WS", f"Closing {peer}: {e}")
                    await ws.close(code=WS_INVALID_PAYLOAD)
                    break
                collector.ingest(entry)
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass
        finally:
            collector.broadcaster.unsubscribe(viewer)
            if pump is not None:
                pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump

    # ----------------------------
    # Routes: read-only views
    # ----------------------------
    @app.get("/logs")
    def all_logs(request: Request):
        snapshot = _collector(request).store.get_all()
        return {svc: _wire(entries) for svc, entries in snapshot.items()}

    @app.get("/logs/{service}")
    def service_logs(service: str, request: Request, dedupe: Optional[str] = None):
        entries = _collector(request).store.get_service(service)
        if dedupe is None:
            return _wire(entries)
        if dedupe not in DEDUPE_MODES:
            raise HTTPException(400, f"dedupe must be one of: {', '.join(sorted(DEDUPE_MODES))}")
        return _wire(DEDUPE_MODES[dedupe](entries))

    @app.get("/services")
    def services(request: Request):
        return sorted(_collector(request).aggregator.get_all_services())

    @app.get("/services/{service}/unique")
    def unique_logs(service: str, request: Request):
        return _wire(_collector(request).aggregator.get_logs(service))

    @app.get("/healthz")
    def healthz(request: Request):
        collector = _collector(request)
        return {
            "ok": True,
            "retained": len(collector.store),
            "services": len(collector.store.services()),
            "viewers": collector.broadcaster.viewer_count(),
        }

    @app.get("/stream")
    async def stream(request: Request):
        client = request.client.host if request.client else "unknown"
        events = sse_events(_collector(request).broadcaster, request.is_disconnected, label=f"sse {client}")
        return StreamingResponse(events, media_type="text/event-stream")

    return app


async def _pump(ws: WebSocket, viewer: Viewer) -> None:
    """Drain one viewer's queue onto its socket."""
    try:
        while True:
            entry = await viewer.get()
            await ws.send_json(entry.to_wire())
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        diagnostics.log(diagnostics.LEVEL_DEBUG, "WS", f"{viewer.label} delivery stopped: {e!r}")


async def sse_events(
    broadcaster: Broadcaster,
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    label: str = "sse",
    keepalive_s: float = SSE_KEEPALIVE_S,
) -> AsyncIterator[str]:
    """Server-Sent Events: the retained backlog, then live entries until the client goes away."""
    viewer, backlog = broadcaster.subscribe(label=label)
    try:
        for entry in backlog:
            yield f"data: {json.dumps(entry.to_wire())}\n\n"
        while not await is_disconnected():
            try:
                entry = await asyncio.wait_for(viewer.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(entry.to_wire())}\n\n"
    finally:
        broadcaster.unsubscribe(viewer)
