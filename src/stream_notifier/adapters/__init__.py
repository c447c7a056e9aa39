"""Adapters between routed events and the outside world."""

from .notification_adapter import (
    LoggingNotificationSink, CallbackNotificationSink,
    render_summary, format_price, format_address
)

__all__ = [
    'LoggingNotificationSink', 'CallbackNotificationSink',
    'render_summary', 'format_price', 'format_address'
]
