from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, Optional, Union

from tracetap.models import LogEntry, utcnow

RECOGNIZED_KEYS = ("Timestamp", "Level", "Message", "Service", "TraceID", "SessionID")


class MalformedPayload(ValueError):
    """Raised when a payload is not a JSON object."""


_RFC3339 = re.compile(
    r"(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2})"
)


def _parse_rfc3339(value: str) -> Optional[datetime]:
    m = _RFC3339.fullmatch(value)
    if not m:
        return None
    # fromisoformat wants at most microseconds and an upper-case zone designator
    frac = ((m.group("frac") or "") + "000000")[:6]
    offset = m.group("offset").upper().replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(f"{m.group('date')}T{m.group('time')}.{frac}{offset}")
    except ValueError:
        return None


def _render(value: Any) -> str:
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def translate(raw: Union[bytes, str, Dict[str, Any]], default_service: str) -> LogEntry:
    """
    Turn one raw JSON object into a LogEntry.

    Missing or mistyped fields fall back to defaults:
      Timestamp -> now (UTC), Level -> "INFO", Message -> rendered value or "",
      Service -> default_service, TraceID/SessionID -> "".
    Any other top-level key is kept as metadata.
    """
    if isinstance(raw, dict):
        generic = raw
    else:
        try:
            generic = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"failed to unmarshal raw log: {e}") from e
    if not isinstance(generic, dict):
        raise MalformedPayload(f"expected a JSON object, got {type(generic).__name__}")

    ts = None
    if isinstance(generic.get("Timestamp"), str):
        ts = _parse_rfc3339(generic["Timestamp"])

    msg = generic.get("Message")
    if not isinstance(msg, str):
        msg = _render(msg)

    def _str(key: str, default: str = "") -> str:
        val = generic.get(key)
        return val if isinstance(val, str) else default

    return LogEntry(
        timestamp=ts or utcnow(),
        level=_str("Level", "INFO"),
        message=msg,
        service=_str("Service") or default_service,
        trace_id=_str("TraceID"),
        session_id=_str("SessionID"),
        metadata={k: v for k, v in generic.items() if k not in RECOGNIZED_KEYS},
    )
