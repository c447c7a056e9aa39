"""Notification sinks that turn routed events into deliveries."""

import inspect
from typing import Any, Callable, Dict, List, Optional
from loguru import logger

from ..events.stream_events import DomainEvent
from ..interfaces.notification import NotificationSinkInterface


def format_price(price: Any, currency: str = "ETH") -> str:
    """Format a price with three decimals, ``N/A`` when missing."""
    if price in (None, ""):
        return "N/A"
    try:
        return f"{float(price):,.3f} {currency}"
    except (TypeError, ValueError):
        return "N/A"


def format_address(address: Optional[str]) -> str:
    """Shorten a wallet address to ``0x1234...abcd``."""
    if not address:
        return "Unknown"
    return f"{address[:6]}...{address[-4:]}"


def render_summary(event: DomainEvent) -> str:
    """One-line human readable summary of an event."""
    kind = event.kind
    title = kind.display_name if kind else event.event_name

    body = event.body
    collection = body.get("collection") if isinstance(body.get("collection"), dict) else {}
    name = collection.get("name") or event.collection_slug or "Unknown Collection"

    parts = [f"{title} | {name}"]

    token_id = event.token_id
    if token_id is not None:
        parts.append(f"Token #{token_id}")

    if event.price is not None:
        parts.append(format_price(event.price))

    maker = body.get("maker")
    if isinstance(maker, dict):
        maker = maker.get("address")
    if isinstance(maker, str) and maker:
        parts.append(f"from {format_address(maker)}")

    return " - ".join(parts)


class LoggingNotificationSink(NotificationSinkInterface):
    """Writes every delivery to the log and keeps the last few in memory."""

    def __init__(self, history_size: int = 100):
        self.history_size = history_size
        self.history: List[Dict[str, Any]] = []

    async def deliver(self, subscriber: str, event: DomainEvent) -> None:
        summary = render_summary(event)
        logger.info(f"Notify {subscriber}: {summary}")

        self.history.append({
            "subscriber": subscriber,
            "summary": summary,
            "event": event.to_dict(),
        })
        if len(self.history) > self.history_size:
            del self.history[:len(self.history) - self.history_size]


class CallbackNotificationSink(NotificationSinkInterface):
    """Hands each delivery to a user callable, sync or async."""

    def __init__(self, callback: Callable[[str, DomainEvent], Any]):
        if not callable(callback):
            raise TypeError("callback must be callable")
        self.callback = callback

    async def deliver(self, subscriber: str, event: DomainEvent) -> None:
        result = self.callback(subscriber, event)
        if inspect.isawaitable(result):
            await result

