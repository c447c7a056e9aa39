"""
Stream Notifier - resilient push-feed client for collection events.

This package keeps one WebSocket connection to a topic-based event feed,
joins a topic per watched collection and fans incoming events out to the
subscribers that asked for them.

Main Components:
- StreamNotifierService: Main interface class
- NotifierConfig: Configuration management
- ConnectionSupervisor: Connection lifecycle, heartbeats and reconnection
- SubscriptionRegistry: Desired subscriptions and topic reconciliation
- EventRouter: Per-subscriber event fan-out
- TopicProtocolCodec: Feed frame encoding and decoding

Example usage:
    >>> from stream_notifier import create_default_service, CallbackNotificationSink
    >>>
    >>> sink = CallbackNotificationSink(lambda user, event: print(user, event.event_name))
    >>> service = create_default_service("subscriptions.json", sink=sink)
    >>>
    >>> async with service:
    >>>     result = await service.registry.subscribe("1234", "cryptopunks")
    >>>     result.raise_for_status()
    >>>     await service.wait_until_stopped()
"""

__version__ = "0.1.0"
__author__ = "eugeny"
__email__ = "esshka@gmail.com"

# Main classes
from .services.notifier_service import StreamNotifierService, create_default_service
from .config import NotifierConfig, WebSocketConfig, create_default_config
from .supervisor import ConnectionSupervisor, ConnectionState, DisconnectReason
from .registry import SubscriptionRegistry, SubscriptionResult, SubscriptionStatus, TopicHandle
from .router import EventRouter
from .codec import TopicProtocolCodec
from .storage import JsonSubscriptionStore
from .events.stream_events import EventKind, DomainEvent
from .adapters.notification_adapter import LoggingNotificationSink, CallbackNotificationSink

# Convenience imports
__all__ = [
    # Main interface
    'StreamNotifierService',
    'create_default_service',

    # Configuration
    'NotifierConfig',
    'WebSocketConfig',
    'create_default_config',

    # Core components
    'ConnectionSupervisor',
    'ConnectionState',
    'DisconnectReason',
    'SubscriptionRegistry',
    'SubscriptionResult',
    'SubscriptionStatus',
    'TopicHandle',
    'EventRouter',
    'TopicProtocolCodec',
    'JsonSubscriptionStore',

    # Events and sinks
    'EventKind',
    'DomainEvent',
    'LoggingNotificationSink',
    'CallbackNotificationSink',

    # Package info
    '__version__',
    '__author__',
    '__email__',
]
