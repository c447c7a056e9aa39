"""Domain events pushed by the upstream collection feed."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, FrozenSet


COLLECTION_TOPIC_PREFIX = "collection:"


class EventKind(Enum):
    """Recognized upstream event kinds, valued by their wire name."""
    LISTING_CREATED = "item_listed"
    ITEM_SOLD = "item_sold"
    ITEM_TRANSFERRED = "item_transferred"
    OFFER_RECEIVED = "item_received_offer"
    BID_RECEIVED = "item_received_bid"
    METADATA_UPDATED = "item_metadata_updated"
    LISTING_CANCELLED = "item_cancelled"

    @property
    def label(self) -> str:
        """Short kebab-case name, e.g. ``listing-created``."""
        return self.name.lower().replace("_", "-")

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, value: str) -> Optional["EventKind"]:
        """Resolve a wire value or label to a kind; None when unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        for kind in cls:
            if value == kind.value or value == kind.label:
                return kind
        return None

    @classmethod
    def all(cls) -> FrozenSet["EventKind"]:
        return frozenset(cls)


_DISPLAY_NAMES = {
    EventKind.LISTING_CREATED: "New Listing",
    EventKind.ITEM_SOLD: "Item Sold",
    EventKind.ITEM_TRANSFERRED: "Transfer",
    EventKind.OFFER_RECEIVED: "New Offer",
    EventKind.BID_RECEIVED: "New Bid",
    EventKind.METADATA_UPDATED: "Metadata Update",
    EventKind.LISTING_CANCELLED: "Listing Cancelled",
}


@dataclass
class DomainEvent:
    """One upstream event for a collection topic."""
    topic: str
    event_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> Optional[EventKind]:
        return EventKind.parse(self.event_name)

    @property
    def body(self) -> Dict[str, Any]:
        """Inner event body; the feed nests it under ``payload.payload``."""
        inner = self.payload.get("payload")
        if isinstance(inner, dict):
            return inner
        return self.payload

    @property
    def collection_slug(self) -> Optional[str]:
        """Originating collection slug, or None when the event lacks one."""
        collection = self.body.get("collection")
        if isinstance(collection, dict):
            slug = collection.get("slug")
            if isinstance(slug, str) and slug:
                return slug
        return None

    @property
    def token_id(self) -> Optional[str]:
        item = self.body.get("item")
        if isinstance(item, dict) and item.get("token_id") is not None:
            return str(item["token_id"])
        return None

    @property
    def price(self) -> Optional[str]:
        for key in ("sale_price", "base_price"):
            value = self.body.get(key)
            if value is not None:
                return str(value)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "topic": self.topic,
            "event_name": self.event_name,
            "collection": self.collection_slug,
            "received_at": self.received_at,
            "payload": self.payload,
        }


def create_domain_event(
    collection_slug: str,
    event_name: str,
    body: Optional[Dict[str, Any]] = None,
    **kwargs
) -> DomainEvent:
    """Create a domain event shaped the way the feed delivers it."""
    inner = dict(body or {})
    inner.setdefault("collection", {"slug": collection_slug})
    return DomainEvent(
        topic=f"{COLLECTION_TOPIC_PREFIX}{collection_slug}",
        event_name=event_name,
        payload={"event_type": event_name, "payload": inner, **kwargs},
    )
