"""Persistence interface for dependency inversion."""

from abc import ABC, abstractmethod
from typing import Dict, Any


class PersistenceStoreInterface(ABC):
    """Abstract interface for subscription state storage.

    The document has two maps: ``subscriptions`` (subscriber -> ordered list
    of collection slugs) and ``event_filters`` (subscriber -> list of event
    kind wire names; omitted or empty means every kind).
    """

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Load the subscription document, empty maps when nothing is stored."""
        pass

    @abstractmethod
    def save(self, document: Dict[str, Any]) -> None:
        """Replace the stored document."""
        pass
