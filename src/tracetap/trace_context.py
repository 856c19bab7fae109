from __future__ import annotations

import contextvars
import uuid
from typing import Dict, Optional

TRACE_ID = contextvars.ContextVar("trace_id", default=None)
SESSION_ID = contextvars.ContextVar("session_id", default=None)
SERVICE = contextvars.ContextVar("service", default=None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def set_context(*, trace_id: Optional[str], session_id: Optional[str] = None,
                service: Optional[str] = None) -> Dict[str, contextvars.Token]:
    return {
        "trace_id": TRACE_ID.set(trace_id),
        "session_id": SESSION_ID.set(session_id),
        "service": SERVICE.set(service),
    }


def reset_context(tokens: Dict[str, contextvars.Token]) -> None:
    TRACE_ID.reset(tokens["trace_id"])
    SESSION_ID.reset(tokens["session_id"])
    SERVICE.reset(tokens["service"])


def get_context() -> Dict[str, str]:
    out: Dict[str, str] = {}
    trace_id = TRACE_ID.get()
    session_id = SESSION_ID.get()
    service = SERVICE.get()

    if trace_id:
        out["trace_id"] = trace_id
    if session_id:
        out["session_id"] = session_id
    if service:
        out["service"] = service
    return out
