from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from hrms.logging import get_logger
from hrms.storage.models import ActivityEvent, ActivityType, utcnow

logger = get_logger(__name__)


class ActivitySink(Protocol):
    def record_activity(self, event: ActivityEvent) -> None: ...


class ActivityRecorder(Protocol):
    def record(
        self,
        identity_id: str,
        action: ActivityType,
        description: str,
        ip_address: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> ActivityEvent: ...


class LoggingActivityRecorder:
    """Logs audit events and, when a sink is given, hands them to it."""

    def __init__(self, sink: Optional[ActivitySink] = None) -> None:
        self.sink = sink

    def record(
        self,
        identity_id: str,
        action: ActivityType,
        description: str,
        ip_address: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> ActivityEvent:
        event = ActivityEvent(
            identity_id=identity_id,
            action=ActivityType(action),
            description=description,
            ip_address=ip_address,
            created_at=timestamp or utcnow(),
        )
        logger.info(
            "activity_recorded",
            identity_id=identity_id,
            action=event.action.value,
            description=description,
            ip_address=ip_address,
        )
        if self.sink is not None:
            self.sink.record_activity(event)
        return event
