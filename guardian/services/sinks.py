"""
Outbound notification, broadcast and audit contracts.

Delivery is fire-and-forget: ``SinkDispatcher`` logs every sink failure and never
lets it reach the caller, so a state transition that already succeeded against
persistence is never rolled back by a flaky push provider.
"""

from typing import Any, Protocol

import structlog

from guardian.domain.models import Alert, AuditRecord, Coordinates, Priority

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, target_id: str, alert: Alert) -> None: ...


class Broadcaster(Protocol):
    async def broadcast(
        self, center: Coordinates, radius_meters: float, priority: Priority, message: str
    ) -> None: ...


class AuditSink(Protocol):
    async def record(self, entry: AuditRecord) -> None: ...


class SinkDispatcher:
    """Error boundary around the optional outbound sinks."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        broadcaster: Broadcaster | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.audit_sink = audit
        self.logger = logger.bind(component="sink_dispatcher")

    async def notify(self, target_id: str, alert: Alert) -> bool:
        if self.notifier is None:
            self.logger.debug("notification_skipped_no_sink", alert_type=alert.type.value)
            return False
        try:
            await self.notifier.notify(target_id, alert)
            return True
        except Exception as e:
            self.logger.error(
                "notification_failed",
                target_id=target_id,
                alert_type=alert.type.value,
                error=str(e),
            )
            return False

    async def notify_many(self, target_ids: list[str], alert: Alert) -> int:
        delivered = 0
        for target_id in dict.fromkeys(target_ids):
            if await self.notify(target_id, alert):
                delivered += 1
        return delivered

    async def broadcast(
        self, center: Coordinates, radius_meters: float, priority: Priority, message: str
    ) -> bool:
        if self.broadcaster is None:
            return False
        try:
            await self.broadcaster.broadcast(center, radius_meters, priority, message)
            return True
        except Exception as e:
            self.logger.error("broadcast_failed", radius_meters=radius_meters, error=str(e))
            return False

    async def audit(
        self,
        actor: str,
        action: str,
        entity_id: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.record(
                AuditRecord(
                    actor=actor, action=action, entity_id=entity_id, before=before, after=after
                )
            )
        except Exception as e:
            self.logger.warning("audit_record_failed", action=action, entity_id=entity_id, error=str(e))
