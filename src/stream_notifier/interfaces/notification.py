"""Notification sink interface for dependency inversion."""

from abc import ABC, abstractmethod

from ..events.stream_events import DomainEvent


class NotificationSinkInterface(ABC):
    """Abstract interface for rendering and delivering one event to one subscriber."""

    @abstractmethod
    async def deliver(self, subscriber: str, event: DomainEvent) -> None:
        """Deliver ``event`` to ``subscriber``."""
        pass
