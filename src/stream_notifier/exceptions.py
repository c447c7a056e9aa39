"""Custom exceptions for Stream Notifier."""


class StreamNotifierError(Exception):
    """Base exception for Stream Notifier errors."""
    pass


class ConfigurationError(StreamNotifierError):
    """Configuration related errors."""
    pass


class StorageError(StreamNotifierError):
    """Subscription state could not be loaded or saved."""
    pass


# Subscription validation errors
class SubscriptionError(StreamNotifierError):
    """Base error for rejected subscription operations."""

    def __init__(self, message: str, subscriber: str = None, collection: str = None):
        super().__init__(message)
        self.subscriber = subscriber
        self.collection = collection


class InvalidSlugError(SubscriptionError):
    """Collection slug does not match the slug grammar."""
    pass


class InvalidEventKindError(SubscriptionError):
    """Event kind is not part of the recognized enumeration."""

    def __init__(self, message: str, kinds: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.kinds = kinds or []


class CapacityExceededError(SubscriptionError):
    """Subscriber already holds the maximum number of subscriptions."""

    def __init__(self, message: str, limit: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit


class AlreadySubscribedError(SubscriptionError):
    """Subscriber already holds this collection."""
    pass


class NotSubscribedError(SubscriptionError):
    """Subscriber does not hold this collection."""
    pass


# Acknowledgement outcomes
class AckError(StreamNotifierError):
    """Base error for join/leave acknowledgement failures."""

    def __init__(self, message: str, ref: int = None, collection: str = None):
        super().__init__(message)
        self.ref = ref
        self.collection = collection


class AckTimeoutError(AckError):
    """No reply arrived for a request within the rendezvous timeout."""
    pass


class AckRejectedError(AckError):
    """Upstream replied with an error status."""

    def __init__(self, message: str, detail: dict = None, **kwargs):
        super().__init__(message, **kwargs)
        self.detail = detail or {}


class OperationCancelledError(StreamNotifierError):
    """Operation was cancelled because the client is shutting down."""
    pass


# WebSocket-specific exceptions
class WebSocketError(StreamNotifierError):
    """Base WebSocket related errors."""
    pass


class TransportFailureError(WebSocketError):
    """Transport could not be opened or a frame could not be sent."""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 0):
        super().__init__(message)
        self.retry_count = retry_count
        self.max_retries = max_retries


class ReconnectionExhaustedError(WebSocketError):
    """Automatic reconnection gave up after the attempt ceiling."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class MalformedFrameError(WebSocketError):
    """Inbound frame could not be decoded."""

    def __init__(self, message: str, raw_data=None):
        super().__init__(message)
        self.raw_data = raw_data
