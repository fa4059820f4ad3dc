"""
Key lifecycle events.

The core only emits events; persisting and displaying an audit trail, and
delivering "new key available" notifications to devices, belong to external
collaborators that implement `EventSink`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .logger import get_logger
from .models import utcnow

logger = get_logger(__name__)


class KeyEventType(Enum):
    KEY_CREATED = "key_created"
    KEY_ROTATED = "key_rotated"
    KEY_REVOKED = "key_revoked"
    NEW_KEY_AVAILABLE = "new_key_available"
    DISTRIBUTION_WARNING = "distribution_warning"
    DEVICE_REVOKED = "device_revoked"
    MIGRATION_STARTED = "migration_started"
    LEGACY_DEACTIVATED = "legacy_deactivated"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class KeyEvent:
    """One emitted event. `payload` never contains key material."""

    event_type: KeyEventType
    conversation_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)


class EventSink(ABC):
    """Consumer of key events."""

    @abstractmethod
    def emit(self, event: KeyEvent) -> None:
        ...


class NullEventSink(EventSink):
    def emit(self, event: KeyEvent) -> None:
        pass


class InMemoryEventSink(EventSink):
    """Collects events in order; handy for tests and in-process consumers."""

    def __init__(self) -> None:
        self.events: List[KeyEvent] = []

    def emit(self, event: KeyEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: KeyEventType) -> List[KeyEvent]:
        return [e for e in self.events if e.event_type is event_type]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink(EventSink):
    """Writes events as structured log lines."""

    def emit(self, event: KeyEvent) -> None:
        logger.info(
            "%s conversation=%s %s",
            event.event_type.value,
            event.conversation_id,
            " ".join(f"{k}={v}" for k, v in sorted(event.payload.items())),
        )


class FanOutEventSink(EventSink):
    def __init__(self, *sinks: EventSink) -> None:
        self._sinks = list(sinks)

    def emit(self, event: KeyEvent) -> None:
        for sink in self._sinks:
            sink.emit(event)
