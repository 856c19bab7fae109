from __future__ import annotations

import json
import logging
import queue
import threading
import time
import traceback
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import requests
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from websockets.sync.client import ClientConnection, connect

from tracetap.trace_context import get_context, new_trace_id, reset_context, set_context

log = logging.getLogger("tracetap.agent")

TRANSPORT_HTTP = "http"
TRANSPORT_WS = "ws"


def _rfc3339(ts: Union[datetime, str, None]) -> str:
    if isinstance(ts, str):
        return ts
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


class CollectorClient:
    """
    Ships log entries to a tracetap collector from a background thread.

    transport="http" POSTs each entry to /ingest; transport="ws" keeps one
    WebSocket open to /ws and reconnects on the next send after a failure.
    Entries are dropped when the local queue is full.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8090,
        service: str = "python-app",
        transport: str = TRANSPORT_HTTP,
        max_q: int = 8000,
        timeout: float = 5.0,
    ):
        if transport not in (TRANSPORT_HTTP, TRANSPORT_WS):
            raise ValueError(f"unknown transport: {transport!r}")
        self.host = host
        self.port = port
        self.service = service
        self.transport = transport
        self.timeout = timeout
        self.http_url = f"http://{host}:{port}/ingest"
        self.ws_url = f"ws://{host}:{port}/ws"
        self.q: "queue.Queue[dict]" = queue.Queue(maxsize=max_q)
        self._ws: Optional[ClientConnection] = None
        self._ws_lock = threading.Lock()
        self._stack = ExitStack()
        self._closed = False
        threading.Thread(target=self._worker, daemon=True).start()

    # ----------------------------
    # Public API
    # ----------------------------
    def build_payload(
        self,
        level: str,
        message: str,
        *,
        service: Optional[str] = None,
        trace_id: Optional[str] = None,
        session_id: Optional[str] = None,
        timestamp: Union[datetime, str, None] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> dict:
        ctx = get_context()
        payload: Dict[str, Any] = dict(metadata or {})
        payload.update({
            "Timestamp": _rfc3339(timestamp),
            "Level": level,
            "Message": message,
            "Service": service or ctx.get("service") or self.service,
        })
        trace_id = trace_id or ctx.get("trace_id")
        session_id = session_id or ctx.get("session_id")
        if trace_id:
            payload["TraceID"] = trace_id
        if session_id:
            payload["SessionID"] = session_id
        return payload

    def log(self, level: str = "INFO", message: str = "", **kwargs) -> None:
        self.emit(self.build_payload(level, message, **kwargs))

    def info(self, message: str, **kwargs) -> None:
        self.log("INFO", message, **kwargs)

    def warn(self, message: str, **kwargs) -> None:
        self.log("WARN", message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self.log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        self.log("DEBUG", message, **kwargs)

    def emit(self, payload: dict) -> None:
        try:
            self.q.put_nowait(payload)
        except queue.Full:
            # drop under pressure
            pass

    def flush(self) -> None:
        """Block until every queued entry has been attempted."""
        self.q.join()

    def close(self) -> None:
        self._closed = True
        with self._ws_lock:
            self._disconnect()

    # ----------------------------
    # Transports
    # ----------------------------
    def send(self, payload: dict) -> None:
        if self.transport == TRANSPORT_WS:
            self._send_ws(payload)
        else:
            resp = requests.post(self.http_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()

    def _send_ws(self, payload: dict) -> None:
        with self._ws_lock:
            if self._ws is None:
                self._ws = self._stack.enter_context(connect(self.ws_url, open_timeout=self.timeout))
            try:
                self._ws.send(json.dumps(payload, default=str))
                self._drain()
            except Exception:
                self._disconnect()
                raise

    def _disconnect(self) -> None:
        # caller holds _ws_lock
        self._ws = None
        self._stack.close()

    def _drain(self) -> None:
        # the collector replays and streams entries to every socket; discard them
        while True:
            try:
                self._ws.recv(timeout=0)
            except TimeoutError:
                return

    def _worker(self):
        while True:
            item = self.q.get()
            try:
                if not self._closed:
                    self.send(item)
            except Exception as e:
                log.debug("tracetap send failed: %s", e)
            finally:
                self.q.task_done()


# ----------------------------
# Framework integration
# ----------------------------
class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Opens a trace context per request and reports its start and completion."""

    def __init__(self, app, client: CollectorClient):
        super().__init__(app)
        self.client = client

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        trace_id = request.headers.get("x-trace-id") or new_trace_id()
        session_id = request.headers.get("x-session-id")
        tokens = set_context(trace_id=trace_id, session_id=session_id, service=self.client.service)

        self.client.info(f"Incoming {request.method} {request.url.path}", metadata={
            "method": request.method,
            "url": str(request.url.path),
            "client": request.client.host if request.client else None,
        })

        status = 500
        try:
            resp = await call_next(request)
            status = resp.status_code
            resp.headers["x-tracetap-trace-id"] = trace_id
            return resp
        finally:
            dur_ms = (time.time() - start) * 1000.0
            level = "ERROR" if status >= 500 else "INFO"
            self.client.log(level, "Request completed", metadata={
                "duration": round(dur_ms, 3),
                "statusCode": int(status),
            })
            reset_context(tokens)


class CollectorLogHandler(logging.Handler):
    """Forwards stdlib logging records to the collector."""

    def __init__(self, client: CollectorClient, level=logging.INFO):
        super().__init__(level=level)
        self.client = client

    def emit(self, record: logging.LogRecord):
        if record.name.startswith("tracetap"):
            return
        try:
            level = record.levelname.upper()
            if level == "WARNING":
                level = "WARN"
            metadata = {
                "logger": record.name,
                "file": record.pathname,
                "line": record.lineno,
                "func": record.funcName,
            }
            if record.exc_info:
                metadata["trace"] = "".join(traceback.format_exception(*record.exc_info))
            self.client.log(
                level,
                self.format(record),
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
                metadata=metadata,
            )
        except Exception:
            self.handleError(record)


def install_observability(
    app,
    *,
    service_name: str,
    host: str = "localhost",
    port: int = 8090,
    transport: str = TRANSPORT_HTTP,
    log_level: int = logging.INFO,
) -> CollectorClient:
    client = CollectorClient(host=host, port=port, service=service_name, transport=transport)
    app.add_middleware(RequestTracingMiddleware, client=client)

    handler = CollectorLogHandler(client, level=log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)

    return client
