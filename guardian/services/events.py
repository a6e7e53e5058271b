"""
In-process event bus.

Each subscriber gets its own bounded ``asyncio.Queue`` for the event kinds it asked
for. Publishing never blocks and never fails the publisher: a full queue drops
the event for that subscriber and logs it.
"""

import asyncio
from collections import deque

import structlog

from guardian.domain.events import DomainEvent, EventKind

logger = structlog.get_logger(__name__)


class EventBus:
    def __init__(self, queue_size: int = 1000, history_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[EventKind, list[asyncio.Queue[DomainEvent]]] = {}
        self.history: deque[DomainEvent] = deque(maxlen=history_size)
        self.logger = logger.bind(component="event_bus")

    def subscribe(self, *kinds: EventKind) -> asyncio.Queue[DomainEvent]:
        """Return a new queue receiving every event of the given kinds."""
        if not kinds:
            kinds = tuple(EventKind)
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=self.queue_size)
        for kind in kinds:
            self._subscribers.setdefault(kind, []).append(queue)
        self.logger.debug("subscriber_added", kinds=[k.value for k in kinds])
        return queue

    def unsubscribe(self, queue: asyncio.Queue[DomainEvent]) -> None:
        for queues in self._subscribers.values():
            if queue in queues:
                queues.remove(queue)

    def publish(self, event: DomainEvent) -> None:
        self.history.append(event)
        for queue in self._subscribers.get(event.kind, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.logger.warning("event_dropped_queue_full", kind=event.kind.value)

    def published(self, kind: EventKind) -> list[DomainEvent]:
        return [event for event in self.history if event.kind == kind]
