"""Progress events for ERIS ingestion.

Topics are ``<entity>:<action>`` strings, e.g. ``case:created``,
``offender:created``, ``processing_log:created`` and ``session:updated``.
Delivery is in-process and best effort: a subscriber that raises is
logged and skipped, and never affects the pipeline or other subscribers.
"""

import asyncio
import inspect
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..logging import get_context_logger

logger = get_context_logger(__name__)

WILDCARD = "*"

ENTITIES = ("case", "notice", "offender", "review_case", "staging_record", "processing_log", "session")
ACTIONS = ("created", "updated")

SESSION_UPDATED = "session:updated"
PROCESSING_LOG_CREATED = "processing_log:created"
OFFENDER_CREATED = "offender:created"
REVIEW_CASE_CREATED = "review_case:created"
REVIEW_CASE_UPDATED = "review_case:updated"


def topic(entity: str, action: str) -> str:
    """Build a topic name, rejecting unknown entities or actions."""
    if entity not in ENTITIES or action not in ACTIONS:
        raise ValueError(f"Unknown topic {entity}:{action}")
    return f"{entity}:{action}"


class ProgressEvent(BaseModel):
    """Event delivered to subscribers."""

    event_id: UUID = Field(default_factory=uuid4)
    event: str
    session_id: UUID | None = None
    entity_ref: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[ProgressEvent], Awaitable[None] | None]


class ProgressEventBus:
    """In-process publish/subscribe for ingestion progress."""

    def __init__(self, queue_size: int = 1000):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.queue_size = queue_size
        self.published = 0
        self.delivery_failures = 0

    def subscribe(self, topic_name: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for a topic (or ``*`` for all topics).

        Returns:
            A function that removes the subscription
        """
        self._handlers[topic_name].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic_name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_queue(
        self, topic_name: str = WILDCARD, maxsize: int | None = None
    ) -> tuple["asyncio.Queue[ProgressEvent]", Callable[[], None]]:
        """Subscribe with a bounded queue; events are dropped when it is full."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize or self.queue_size)

        def enqueue(event: ProgressEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.event} event; subscriber queue is full",
                    extra={"topic": event.event},
                )

        return queue, self.subscribe(topic_name, enqueue)

    async def publish(
        self,
        topic_name: str,
        *,
        session_id: UUID | None = None,
        entity_ref: str | UUID | None = None,
        data: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        """Deliver an event to every matching subscriber, in order."""
        event = ProgressEvent(
            event=topic_name,
            session_id=session_id,
            entity_ref=str(entity_ref) if entity_ref is not None else None,
            data=data or {},
        )
        handlers = list(self._handlers.get(topic_name, [])) + list(
            self._handlers.get(WILDCARD, [])
        )
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.delivery_failures += 1
                logger.exception(
                    f"Subscriber failed for {topic_name}",
                    extra={"topic": topic_name},
                )
        self.published += 1
        return event
