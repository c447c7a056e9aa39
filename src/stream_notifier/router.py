"""Fan-out of inbound domain events to interested subscribers."""

import asyncio
from typing import List, Set
from loguru import logger

from .codec import InboundFrame
from .events.stream_events import DomainEvent
from .interfaces.notification import NotificationSinkInterface
from .registry import SubscriptionRegistry


class EventRouter:
    """Routes each domain event to the sink once per matching subscriber.

    Matching reads the registry's desired state: a subscriber matches when it
    holds the event's collection and the event kind is in its effective
    filter. No ordering is kept between subscribers of one event.
    """

    def __init__(self, registry: SubscriptionRegistry, sink: NotificationSinkInterface):
        self.registry = registry
        self.sink = sink

        self._in_flight: Set[asyncio.Task] = set()

        # Statistics
        self.events_routed = 0
        self.events_dropped = 0
        self.notifications_sent = 0
        self.notifications_failed = 0

    def match(self, event: DomainEvent) -> List[str]:
        """Subscribers that should receive ``event``."""
        collection = event.collection_slug
        if collection is None:
            return []

        kind = event.kind
        return [
            subscriber for subscriber in self.registry.subscribers_for(collection)
            if kind is not None and kind in self.registry.get_filter(subscriber)
        ]

    async def route(self, event: DomainEvent) -> List[str]:
        """Deliver ``event`` to every matching subscriber.

        Returns the subscribers the sink accepted the event for. A failing
        delivery is logged and does not affect the other subscribers.
        """
        collection = event.collection_slug
        if collection is None:
            self.events_dropped += 1
            logger.warning(f"Dropping {event.event_name} on {event.topic}: event has no collection slug")
            return []

        logger.debug(
            f"Received {event.event_name} for {collection} "
            f"(token {event.token_id}, price {event.price})"
        )

        recipients = self.match(event)
        if not recipients:
            logger.debug(f"No subscriber wants {event.event_name} for {collection}")
            return []

        self.events_routed += 1
        results = await asyncio.gather(
            *(self.sink.deliver(subscriber, event) for subscriber in recipients),
            return_exceptions=True
        )

        delivered = []
        for subscriber, result in zip(recipients, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.notifications_failed += 1
                logger.error(f"Failed to notify {subscriber} of {event.event_name} on {collection}: {result}")
            else:
                self.notifications_sent += 1
                delivered.append(subscriber)
        return delivered

    def submit(self, event: DomainEvent) -> asyncio.Task:
        """Route ``event`` in the background; the task is tracked until done."""
        task = asyncio.create_task(self.route(event))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    def handle_frame(self, frame: InboundFrame) -> None:
        """Supervisor frame listener: routes domain events, ignores the rest."""
        if isinstance(frame, DomainEvent):
            self.submit(frame)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._in_flight:
            await asyncio.wait(set(self._in_flight))

    def get_stats(self):
        return {
            "events_routed": self.events_routed,
            "events_dropped": self.events_dropped,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "in_flight": len(self._in_flight),
        }
