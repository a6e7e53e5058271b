"""
Development sinks that write notifications, broadcasts and audit records to the
structured log and keep a bounded in-memory history for inspection.

Production deployments replace these with push, SMS and audit-store adapters
implementing the same protocols.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from guardian.domain.models import Alert, AuditRecord, Coordinates, Priority, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class SentNotification:
    target_id: str
    alert: Alert
    sent_at: datetime = field(default_factory=utcnow)


@dataclass
class SentBroadcast:
    center: Coordinates
    radius_meters: float
    priority: Priority
    message: str
    sent_at: datetime = field(default_factory=utcnow)


class LoggingNotifier:
    def __init__(self, history_size: int = 1000) -> None:
        self.sent: deque[SentNotification] = deque(maxlen=history_size)
        self.logger = logger.bind(component="notifier")

    async def notify(self, target_id: str, alert: Alert) -> None:
        self.sent.append(SentNotification(target_id=target_id, alert=alert))
        self.logger.info(
            "notification_sent",
            target_id=target_id,
            alert_type=alert.type.value,
            message=alert.message,
        )


class LoggingBroadcaster:
    def __init__(self, history_size: int = 1000) -> None:
        self.sent: deque[SentBroadcast] = deque(maxlen=history_size)
        self.logger = logger.bind(component="broadcaster")

    async def broadcast(
        self, center: Coordinates, radius_meters: float, priority: Priority, message: str
    ) -> None:
        self.sent.append(
            SentBroadcast(center=center, radius_meters=radius_meters, priority=priority, message=message)
        )
        # Coordinates rounded to ~100 m.
        self.logger.info(
            "geo_broadcast_sent",
            lat=round(center.lat, 3),
            lng=round(center.lng, 3),
            radius_meters=radius_meters,
            priority=priority.value,
        )


class LoggingAuditSink:
    def __init__(self, history_size: int = 10000) -> None:
        self.records: deque[AuditRecord] = deque(maxlen=history_size)
        self.logger = logger.bind(component="audit")

    async def record(self, entry: AuditRecord) -> None:
        self.records.append(entry)
        self.logger.info(
            "audit_recorded", actor=entry.actor, action=entry.action, entity_id=entry.entity_id
        )
