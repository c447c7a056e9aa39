"""Utility modules for Stream Notifier."""

from .validation import SubscriptionValidator, ConfigValidator
from .backoff import compute_backoff_delay

__all__ = [
    'SubscriptionValidator',
    'ConfigValidator',
    'compute_backoff_delay',
]
