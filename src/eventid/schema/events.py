"""Event envelope and the closed set of recognized event types.

The envelope is the JSON document carried on the broker:

    {
      "event_id": "0192f0c4-...",        # UUIDv7, time-ordered
      "event_version": 1,
      "event_type": "REGULATORY_UPDATE",
      "platform": "scraper",
      "timestamp": "2026-10-19T09:30:00Z",
      "correlation_id": "corr-...",      # optional
      "user_id": "user_789",             # optional
      "event_data": {
        "workspace_id": "ws_saas_product",
        "jurisdiction": {"framework": "GDPR", "region": "EU"},
        "risk_context": {"change_severity": "HIGH"}
      }
    }
"""

from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from eventid.errors import MalformedEnvelopeError

CURRENT_EVENT_VERSION = 1


class EventType(str, Enum):
    """Recognized event types. Adding one is an explicit change here."""
    REGULATORY_UPDATE = "REGULATORY_UPDATE"
    LAW_FETCHED = "LAW_FETCHED"
    SPEC_GENERATED = "SPEC_GENERATED"
    SPEC_UPDATED = "SPEC_UPDATED"
    SPEC_REQUESTED = "SPEC_REQUESTED"
    AUDIT_STARTED = "AUDIT_STARTED"
    AUDIT_COMPLETED = "AUDIT_COMPLETED"
    VIOLATION_FOUND = "VIOLATION_FOUND"
    SCAN_REQUESTED = "SCAN_REQUESTED"
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
    COMPLIANCE_CHECK = "COMPLIANCE_CHECK"
    GAP_IDENTIFIED = "GAP_IDENTIFIED"
    REVIEW_REQUESTED = "REVIEW_REQUESTED"
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    VALIDATION_STATUS = "VALIDATION_STATUS"


class Platform(str, Enum):
    """Emitting platforms."""
    SCRAPER = "scraper"   # law / regulation fetching
    CODE = "code"         # spec generation
    SCAN = "scan"         # code scanning
    REVIEW = "review"     # human review


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


def new_event_id() -> str:
    """Generate a UUIDv7 string (48-bit unix ms timestamp + random bits)."""
    unix_ms = time.time_ns() // 1_000_000
    value = (unix_ms & 0xFFFF_FFFF_FFFF) << 80 | int.from_bytes(os.urandom(10), "big")
    value = (value & ~(0xF << 76)) | (0x7 << 76)
    value = (value & ~(0x3 << 62)) | (0x2 << 62)
    return str(uuid.UUID(int=value))


def new_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex}"


def resolve_path(document: Any, path: str) -> Any:
    """Resolve a dotted path ("jurisdiction.framework") inside nested dicts.

    Returns None when any segment is missing.
    """
    current = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class EventEnvelope(BaseModel):
    """Serialized event record as it appears on the broker."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    event_id: str = Field(default_factory=new_event_id, min_length=1, max_length=64)
    event_version: int = CURRENT_EVENT_VERSION
    event_type: EventType
    platform: Platform
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None
    user_id: str | None = None
    event_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("event_version")
    @classmethod
    def _positive_version(cls, value: int) -> int:
        if value < 1:
            raise ValueError("event_version must be >= 1")
        return value

    # ------------------------------------------------------------------
    # Codec
    # ------------------------------------------------------------------

    @classmethod
    def decode(cls, raw: bytes | str) -> EventEnvelope:
        """Decode a broker payload, raising MalformedEnvelopeError on any problem."""
        try:
            document = json.loads(raw)
        except (TypeError, ValueError, UnicodeDecodeError) as e:
            raise MalformedEnvelopeError(f"envelope is not valid JSON: {e}", raw) from e
        if not isinstance(document, dict):
            raise MalformedEnvelopeError("envelope must be a JSON object", raw)
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            fields = ",".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise MalformedEnvelopeError(f"invalid envelope fields: {fields}", raw) from e

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    # ------------------------------------------------------------------
    # Payload accessors
    # ------------------------------------------------------------------

    @property
    def partition_key(self) -> str:
        """Events of one correlation chain land on the same partition."""
        return self.correlation_id or self.event_id

    def get(self, path: str) -> Any:
        """Look up a dotted path; the ``event.`` prefix addresses envelope fields."""
        if path.startswith("event."):
            value = getattr(self, path.removeprefix("event."), None)
            return value.value if isinstance(value, Enum) else value
        return resolve_path(self.event_data, path)

    @property
    def workspace_id(self) -> str | None:
        value = self.event_data.get("workspace_id")
        return str(value) if value is not None else None

    @property
    def framework(self) -> str | None:
        return self.get("jurisdiction.framework")

    @property
    def region(self) -> str | None:
        return self.get("jurisdiction.region")

    @property
    def severity(self) -> Severity | None:
        raw = self.get("risk_context.change_severity")
        if raw is None:
            return None
        try:
            return Severity(str(raw).upper())
        except ValueError:
            return None

    @property
    def causation_depth(self) -> int:
        """Number of workflow hops between the originating event and this one."""
        depth = resolve_path(self.event_data, "causation.depth")
        return depth if isinstance(depth, int) else 0
