"""Abstract interfaces for Stream Notifier collaborators."""

from .persistence import PersistenceStoreInterface
from .notification import NotificationSinkInterface

__all__ = [
    'PersistenceStoreInterface',
    'NotificationSinkInterface',
]
