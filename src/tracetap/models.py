from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_SERVICE = "UNKNOWN"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------
# Canonical record
# ----------------------------
class LogEntry(BaseModel):
    """
    Canonical log record. Field aliases are the wire names:
      Timestamp, Level, Message, Service, TraceID, SessionID, Metadata
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: datetime = Field(default_factory=utcnow, alias="Timestamp")
    level: str = Field(default="INFO", alias="Level")
    message: str = Field(default="", alias="Message")
    service: str = Field(default="", alias="Service")
    trace_id: str = Field(default="", alias="TraceID")
    session_id: str = Field(default="", alias="SessionID")
    metadata: Dict[str, Any] = Field(default_factory=dict, alias="Metadata")

    def with_service_fallback(self, fallback: str = UNKNOWN_SERVICE) -> "LogEntry":
        if self.service:
            return self
        return self.model_copy(update={"service": fallback})

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "Timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "Level": self.level,
            "Message": self.message,
            "Service": self.service,
        }
        if self.trace_id:
            out["TraceID"] = self.trace_id
        if self.session_id:
            out["SessionID"] = self.session_id
        if self.metadata:
            out["Metadata"] = copy.deepcopy(self.metadata)
        return out
