"""Test fixtures and mock transports for Stream Notifier tests."""

from .mock_data import (
    InMemorySubscriptionStore, RecordingSink, reply_frame, close_frame, event_frame
)
from .mock_websocket import MockWebSocket, MockConnector, wait_until

__all__ = [
    'InMemorySubscriptionStore',
    'RecordingSink',
    'reply_frame',
    'close_frame',
    'event_frame',
    'MockWebSocket',
    'MockConnector',
    'wait_until',
]
