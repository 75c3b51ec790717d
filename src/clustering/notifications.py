"""
Session progress notifications.

The transport is external; sessions only call publish(event). Publishing is
best effort: a failing sink never affects the session outcome.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import _utc_now

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    CLUSTER_BATCH_READY = "cluster_batch_ready"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"


@dataclass
class SessionEvent:
    kind: EventKind
    session_id: str
    message: str
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "session_id": self.session_id,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


class NotificationSink(ABC):
    """Receiver of session events."""

    @abstractmethod
    def publish(self, event: SessionEvent) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes events to the log."""

    def publish(self, event: SessionEvent) -> None:
        logger.info(f"[{event.kind.value}] session={event.session_id}: {event.message}")


class RecordingNotificationSink(NotificationSink):
    """Keeps events in memory (local runs and tests)."""

    def __init__(self):
        self.events: List[SessionEvent] = []

    def publish(self, event: SessionEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[EventKind]:
        return [e.kind for e in self.events]


def safe_publish(sink: Optional[NotificationSink], kind: EventKind, session_id: str, message: str) -> None:
    """Publish an event, logging and swallowing any sink failure."""
    if sink is None:
        return
    try:
        sink.publish(SessionEvent(kind=kind, session_id=session_id, message=message))
    except Exception as e:
        logger.warning(f"Notification {kind.value} for session {session_id} failed: {e}")
