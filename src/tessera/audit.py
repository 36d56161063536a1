"""Append-only audit trail for permission and plugin lifecycle events.

The trail is observability only: nothing in the host reads it back to make
an authorization decision.

Sinks:
- FileAuditSink: JSON Lines file, one event per line, flushed per write
- MemoryAuditSink: bounded in-memory buffer (tests, diagnostics)
- NullAuditSink: discards everything
- CompositeAuditSink: fans out to several sinks
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuditEventType(StrEnum):
    """Audit event types."""

    PERMISSION_REQUESTED = "permission_requested"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    ESCALATION_DETECTED = "escalation_detected"
    PLUGIN_LOADED = "plugin_loaded"
    PLUGIN_RELOADED = "plugin_reloaded"
    PLUGIN_UNLOADED = "plugin_unloaded"
    PLUGIN_LOAD_FAILED = "plugin_load_failed"
    SANDBOX_FAULT = "sandbox_fault"


class AuditEvent(BaseModel):
    """Audit event record."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event_type: AuditEventType
    subject: str | None = None  # "plugin:NAME" or "command:NAME"
    capability: str | None = None
    pattern: str | None = None
    verdict: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditSink(ABC):
    """Destination for audit events. Implementations must be thread-safe."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None: ...

    def close(self) -> None:
        """Release resources."""


class NullAuditSink(AuditSink):
    def record(self, event: AuditEvent) -> None:
        pass


class MemoryAuditSink(AuditSink):
    """Keeps the most recent ``max_events`` events."""

    def __init__(self, max_events: int = 1000):
        self._events: deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [event for event in self.events if event.event_type is event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class FileAuditSink(AuditSink):
    """Appends events to a JSON Lines file.

    A failed write is logged and dropped; auditing never takes the host down.
    """

    def __init__(self, path: str | Path = "~/.tessera/audit.jsonl"):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        line = event.model_dump_json() + "\n"
        with self._lock:
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
            except OSError as e:
                logger.error(f"Failed to write audit event to {self.path}: {e}")

    def read_events(self) -> list[AuditEvent]:
        """Load the whole trail, for operators and tests."""
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [AuditEvent.model_validate_json(line) for line in f if line.strip()]


class CompositeAuditSink(AuditSink):
    def __init__(self, sinks: Iterable[AuditSink]):
        self.sinks = list(sinks)

    def record(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            sink.record(event)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class AuditLog:
    """Convenience front-end that builds events and hands them to a sink."""

    def __init__(self, sink: AuditSink | None = None):
        self.sink = sink or NullAuditSink()

    def record(
        self,
        event_type: AuditEventType,
        subject: object | None = None,
        capability: object | None = None,
        pattern: str | None = None,
        verdict: object | None = None,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            subject=str(subject) if subject is not None else None,
            capability=str(capability) if capability is not None else None,
            pattern=pattern,
            verdict=str(verdict) if verdict is not None else None,
            details=details,
        )
        self.sink.record(event)
        return event

    def close(self) -> None:
        self.sink.close()
