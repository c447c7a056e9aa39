"""Event types shared by the router, registry and sinks."""

from .stream_events import (
    COLLECTION_TOPIC_PREFIX, EventKind, DomainEvent,
    create_domain_event
)

__all__ = [
    'COLLECTION_TOPIC_PREFIX', 'EventKind', 'DomainEvent',
    'create_domain_event'
]
