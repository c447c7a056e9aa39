"""Subscription registry: desired topics, issued topics and reconciliation."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Iterable, FrozenSet, Tuple, Union
from loguru import logger

from .codec import TopicProtocolCodec, AckReply, TopicClosed, InboundFrame
from .events.stream_events import EventKind
from .exceptions import (
    StreamNotifierError, StorageError, InvalidSlugError, InvalidEventKindError,
    CapacityExceededError, AlreadySubscribedError, NotSubscribedError,
    AckTimeoutError, AckRejectedError, OperationCancelledError, TransportFailureError
)
from .interfaces.persistence import PersistenceStoreInterface
from .storage import SUBSCRIPTIONS_KEY, FILTERS_KEY
from .supervisor import ConnectionSupervisor, DisconnectReason
from .utils.validation import SubscriptionValidator


class AckStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class TopicHandle:
    """Join issued for one active collection on one connection generation."""
    collection: str
    ref: int
    generation: int
    status: AckStatus = AckStatus.PENDING
    issued_at: float = field(default_factory=time.time)
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def live(self) -> bool:
        return self.status in (AckStatus.PENDING, AckStatus.CONFIRMED)


class SubscriptionStatus(Enum):
    """Outcome of a subscribe/unsubscribe call once desired state is recorded."""
    CONFIRMED = "confirmed"  # join acknowledged by upstream
    PENDING = "pending"  # not connected; joined by the next reconciliation pass
    UNCONFIRMED = "unconfirmed"  # join sent but no reply within the ack timeout
    REJECTED = "rejected"  # upstream replied with an error
    CANCELLED = "cancelled"  # client shut down while waiting for the reply
    REMOVED = "removed"  # unsubscribed, topic kept or nothing to leave
    LEFT = "left"  # unsubscribed and leave frame sent


@dataclass
class SubscriptionResult:
    """Result of a subscription operation.

    Desired state is always recorded when a result is returned; ``status``
    only describes what happened on the wire.
    """
    subscriber: str
    collection: str
    status: SubscriptionStatus
    ref: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status is SubscriptionStatus.CONFIRMED

    @property
    def error(self) -> Optional[StreamNotifierError]:
        if self.status is SubscriptionStatus.UNCONFIRMED:
            return AckTimeoutError(
                f"Subscription to {self.collection} recorded but not yet confirmed",
                ref=self.ref, collection=self.collection
            )
        if self.status is SubscriptionStatus.REJECTED:
            return AckRejectedError(
                f"Upstream rejected subscription to {self.collection}",
                detail=self.detail, ref=self.ref, collection=self.collection
            )
        if self.status is SubscriptionStatus.CANCELLED:
            return OperationCancelledError(f"Subscription to {self.collection} was cancelled")
        return None

    def raise_for_status(self) -> None:
        error = self.error
        if error is not None:
            raise error


@dataclass
class _PendingAck:
    ref: int
    collection: str
    future: asyncio.Future
    deadline: asyncio.TimerHandle


KindsArg = Optional[Iterable[Union[str, EventKind]]]


class SubscriptionRegistry:
    """Single owner of subscription state.

    Only this class mutates the subscriber maps, the active collection set and
    the topic handles, and it does so from one event at a time on the event
    loop: operation calls, supervisor lifecycle signals and inbound replies.
    Every mutation of desired state is written through to the store before
    any frame is sent.
    """

    def __init__(
        self,
        store: PersistenceStoreInterface,
        supervisor: Optional[ConnectionSupervisor] = None,
        max_subscriptions: int = 3,
        ack_timeout: float = 5.0,
        join_throttle: float = 0.5,
        resubscribe_delay: float = 0.0,
        codec: Optional[TopicProtocolCodec] = None
    ):
        self.store = store
        self.supervisor = supervisor
        self.codec = codec or (supervisor.codec if supervisor else TopicProtocolCodec())
        self.max_subscriptions = max_subscriptions
        self.ack_timeout = ack_timeout
        self.join_throttle = join_throttle
        self.resubscribe_delay = resubscribe_delay

        # Desired state
        self._subscriptions: Dict[str, List[str]] = {}
        self._filters: Dict[str, FrozenSet[EventKind]] = {}
        self._active: Dict[str, None] = {}  # insertion order == activation order

        # Issued state, valid for one connection generation
        self._handles: Dict[str, TopicHandle] = {}
        self._refs: Dict[int, str] = {}
        self._pending: Dict[int, _PendingAck] = {}

        self._generation = 0
        self._online = False
        self._reconcile_task: Optional[asyncio.Task] = None

        # Statistics
        self.joins_sent = 0
        self.leaves_sent = 0
        self.reconciliation_passes = 0

        if supervisor is not None:
            supervisor.add_connected_listener(self._on_connected)
            supervisor.add_disconnected_listener(self._on_disconnected)
            supervisor.add_frame_listener(self._on_frame)

    @classmethod
    def from_config(cls, config, store: PersistenceStoreInterface,
                    supervisor: Optional[ConnectionSupervisor] = None) -> 'SubscriptionRegistry':
        return cls(
            store,
            supervisor=supervisor,
            max_subscriptions=config.max_subscriptions,
            ack_timeout=config.ack_timeout,
            join_throttle=config.join_throttle,
            resubscribe_delay=config.resubscribe_delay,
        )

    # Load / save

    def load(self) -> None:
        """Replace in-memory state with the stored document.

        Unknown slugs, unknown event kinds, duplicates and entries beyond the
        subscription cap are dropped with a warning.

        Raises:
            StorageError: the store could not be read at all
        """
        document = self.store.load()

        self._subscriptions.clear()
        self._filters.clear()
        self._active.clear()
        self._handles.clear()
        self._refs.clear()

        raw_subscriptions = document.get(SUBSCRIPTIONS_KEY) or {}
        for subscriber, slugs in raw_subscriptions.items():
            subscriber = str(subscriber)
            if not isinstance(slugs, list):
                logger.warning(f"Dropping subscriptions for {subscriber}: expected a list, got {type(slugs).__name__}")
                continue

            valid = []
            for slug in slugs:
                if not SubscriptionValidator.validate_slug(slug):
                    logger.warning(f"Dropping invalid collection slug {slug!r} for {subscriber}")
                elif slug in valid:
                    logger.warning(f"Dropping duplicate collection {slug} for {subscriber}")
                else:
                    valid.append(slug)

            if len(valid) > self.max_subscriptions:
                logger.warning(
                    f"Subscriber {subscriber} has {len(valid)} collections, "
                    f"keeping the first {self.max_subscriptions}"
                )
                valid = valid[:self.max_subscriptions]

            if valid:
                self._subscriptions[subscriber] = valid
                for slug in valid:
                    self._active.setdefault(slug)

        raw_filters = document.get(FILTERS_KEY) or {}
        for subscriber, kinds in raw_filters.items():
            subscriber = str(subscriber)
            if not isinstance(kinds, list):
                logger.warning(f"Dropping event filter for {subscriber}: expected a list")
                continue

            parsed, unknown = SubscriptionValidator.split_event_kinds(kinds)
            if unknown:
                logger.warning(f"Dropping unknown event kinds {unknown} for {subscriber}")
            event_filter = self._normalize_filter(parsed)
            if event_filter is not None:
                self._filters[subscriber] = event_filter

        logger.info(
            f"Loaded {len(self._active)} active collections for {len(self._subscriptions)} "
            f"subscribers and {len(self._filters)} event filters"
        )

    def to_document(self) -> Dict[str, Any]:
        """Serializable snapshot of desired state."""
        return {
            SUBSCRIPTIONS_KEY: {
                subscriber: list(slugs)
                for subscriber, slugs in self._subscriptions.items() if slugs
            },
            FILTERS_KEY: {
                subscriber: [kind.value for kind in EventKind if kind in kinds]
                for subscriber, kinds in self._filters.items() if kinds
            },
        }

    def _snapshot(self) -> Tuple[Dict[str, List[str]], Dict[str, FrozenSet[EventKind]], Dict[str, None]]:
        return (
            {subscriber: list(slugs) for subscriber, slugs in self._subscriptions.items()},
            dict(self._filters),
            dict(self._active),
        )

    def _persist(self, snapshot) -> None:
        """Write desired state through; on failure restore ``snapshot`` and raise."""
        try:
            self.store.save(self.to_document())
        except Exception as e:
            self._subscriptions, self._filters, self._active = snapshot
            logger.error(f"Failed to save subscriptions, change rolled back: {e}")
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Failed to save subscriptions: {e}") from e

    # Operations

    async def subscribe(self, subscriber: str, collection: str, kinds: KindsArg = None) -> SubscriptionResult:
        """Subscribe ``subscriber`` to ``collection``.

        ``kinds`` replaces the subscriber's event filter; omitted or empty
        means every kind. When connected, waits up to ``ack_timeout`` for
        the join reply.

        Raises:
            InvalidSlugError, InvalidEventKindError, CapacityExceededError,
            AlreadySubscribedError: nothing was changed
            StorageError: the change could not be saved and was rolled back
        """
        self._check_slug(subscriber, collection)
        event_filter = self._parse_filter(subscriber, kinds) if kinds is not None else None

        current = self._subscriptions.get(subscriber, [])
        if len(current) >= self.max_subscriptions:
            raise CapacityExceededError(
                f"Subscriber {subscriber} has reached the maximum of {self.max_subscriptions} subscriptions",
                limit=self.max_subscriptions, subscriber=subscriber, collection=collection
            )
        if collection in current:
            raise AlreadySubscribedError(
                f"Subscriber {subscriber} is already subscribed to {collection}",
                subscriber=subscriber, collection=collection
            )

        snapshot = self._snapshot()
        self._subscriptions[subscriber] = current + [collection]
        if event_filter is None:
            self._filters.pop(subscriber, None)
        else:
            self._filters[subscriber] = event_filter
        self._active.setdefault(collection)
        self._persist(snapshot)
        logger.info(f"Subscriber {subscriber} subscribed to {collection}")

        if not self.is_connected():
            logger.info(f"Not connected, {collection} will be joined when the connection is established")
            return SubscriptionResult(subscriber, collection, SubscriptionStatus.PENDING)

        return await self._await_join(subscriber, collection)

    async def unsubscribe(self, subscriber: str, collection: str) -> SubscriptionResult:
        """Remove one subscription, leaving the topic if nobody else holds it.

        Raises:
            InvalidSlugError, NotSubscribedError: nothing was changed
            StorageError: the change could not be saved and was rolled back
        """
        self._check_slug(subscriber, collection)

        current = self._subscriptions.get(subscriber, [])
        if collection not in current:
            raise NotSubscribedError(
                f"Subscriber {subscriber} is not subscribed to {collection}",
                subscriber=subscriber, collection=collection
            )

        snapshot = self._snapshot()
        remaining = [slug for slug in current if slug != collection]
        if remaining:
            self._subscriptions[subscriber] = remaining
        else:
            del self._subscriptions[subscriber]

        still_held = self._is_held(collection)
        if not still_held:
            self._active.pop(collection, None)
        self._persist(snapshot)
        logger.info(f"Subscriber {subscriber} unsubscribed from {collection}")

        if still_held:
            logger.debug(f"{collection} is still held by other subscribers, keeping topic joined")
            return SubscriptionResult(subscriber, collection, SubscriptionStatus.REMOVED)

        ref = await self._leave(collection)
        if ref is None:
            return SubscriptionResult(subscriber, collection, SubscriptionStatus.REMOVED)
        return SubscriptionResult(subscriber, collection, SubscriptionStatus.LEFT, ref=ref)

    async def clear_all(self, subscriber: str) -> List[str]:
        """Remove every subscription and the event filter of ``subscriber``.

        Returns the collections that became inactive.
        """
        if subscriber not in self._subscriptions and subscriber not in self._filters:
            return []

        snapshot = self._snapshot()
        removed = self._subscriptions.pop(subscriber, [])
        self._filters.pop(subscriber, None)

        deactivated = [slug for slug in removed if not self._is_held(slug)]
        for slug in deactivated:
            self._active.pop(slug, None)
        self._persist(snapshot)
        logger.info(f"Cleared {len(removed)} subscriptions for {subscriber}")

        for slug in deactivated:
            await self._leave(slug)
        return deactivated

    def set_filter(self, subscriber: str, kinds: Iterable[Union[str, EventKind]]) -> FrozenSet[EventKind]:
        """Replace the event filter of ``subscriber``; empty means every kind.

        Returns the effective filter.
        """
        event_filter = self._parse_filter(subscriber, kinds)

        snapshot = self._snapshot()
        if event_filter is None:
            self._filters.pop(subscriber, None)
        else:
            self._filters[subscriber] = event_filter
        self._persist(snapshot)

        effective = self.get_filter(subscriber)
        logger.info(f"Event filter for {subscriber}: {', '.join(sorted(k.value for k in effective))}")
        return effective

    async def reconcile_after_connect(self, generation: Optional[int] = None) -> List[str]:
        """Join every active collection on the current connection.

        Joins go out one at a time in activation order, ``join_throttle``
        seconds apart. Collections already joined on this generation (by a
        concurrent subscribe) are skipped. Returns the collections joined.
        """
        generation = self._generation if generation is None else generation

        if self.resubscribe_delay:
            await asyncio.sleep(self.resubscribe_delay)
        if not self._is_current(generation):
            return []

        collections = list(self._active)
        logger.info(f"Resubscribing to {len(collections)} active collections")

        joined = []
        for collection in collections:
            if joined and self.join_throttle:
                await asyncio.sleep(self.join_throttle)
            if not self._is_current(generation):
                logger.info("Connection superseded, abandoning resubscription")
                return joined
            if not self._needs_join(collection, generation):
                continue
            if await self._issue_join(collection) is None:
                return joined
            joined.append(collection)

        self.reconciliation_passes += 1
        logger.info(f"Finished resubscribing, {len(joined)} joins sent")
        return joined

    async def close(self) -> None:
        """Cancel reconciliation and resolve every waiting caller as cancelled."""
        previous = self._cancel_reconciliation()
        if previous is not None:
            await asyncio.wait({previous})
        self._settle_all(SubscriptionStatus.CANCELLED, {"reason": "shutdown"})

    # Queries

    def is_connected(self) -> bool:
        return self._online and self.supervisor is not None and self.supervisor.is_connected()

    @property
    def active_collections(self) -> List[str]:
        return list(self._active)

    @property
    def subscribers(self) -> List[str]:
        return list(self._subscriptions)

    def subscriptions_for(self, subscriber: str) -> List[str]:
        return list(self._subscriptions.get(subscriber, []))

    def subscribers_for(self, collection: str) -> List[str]:
        return [
            subscriber for subscriber, slugs in self._subscriptions.items()
            if collection in slugs
        ]

    def get_filter(self, subscriber: str) -> FrozenSet[EventKind]:
        """Effective event filter; every kind when none is set."""
        return self._filters.get(subscriber) or EventKind.all()

    def has_custom_filter(self, subscriber: str) -> bool:
        return subscriber in self._filters

    def handle_for(self, collection: str) -> Optional[TopicHandle]:
        return self._handles.get(collection)

    def get_status(self) -> Dict[str, Any]:
        confirmed = [
            handle.collection for handle in self._handles.values()
            if handle.status is AckStatus.CONFIRMED
        ]
        return {
            "connected": self.is_connected(),
            "generation": self._generation,
            "active_collections": self.active_collections,
            "confirmed_topics": len(confirmed),
            "total_users": len(self._subscriptions),
            "event_filters": len(self._filters),
            "pending_acks": len(self._pending),
            "joins_sent": self.joins_sent,
            "leaves_sent": self.leaves_sent,
            "reconciliation_passes": self.reconciliation_passes,
        }

    # Supervisor signals

    def _on_connected(self, generation: int) -> None:
        self._generation = generation
        self._online = True
        self._invalidate_handles()

        previous = self._cancel_reconciliation()
        self._reconcile_task = asyncio.create_task(self._run_reconciliation(generation, previous))

    def _on_disconnected(self, reason: DisconnectReason) -> None:
        self._online = False
        self._cancel_reconciliation()

        status = SubscriptionStatus.CANCELLED if reason is DisconnectReason.STOPPED else SubscriptionStatus.PENDING
        self._settle_all(status, {"reason": reason.value})
        self._invalidate_handles()

    def _on_frame(self, frame: InboundFrame) -> None:
        if isinstance(frame, AckReply):
            self._handle_reply(frame)
        elif isinstance(frame, TopicClosed):
            self._handle_topic_closed(frame)

    async def _run_reconciliation(self, generation: int, previous: Optional[asyncio.Task]) -> None:
        # The previous pass must be fully unwound before this one sends anything
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await self.reconcile_after_connect(generation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Resubscription pass failed: {e}")

    def _cancel_reconciliation(self) -> Optional[asyncio.Task]:
        task = self._reconcile_task
        self._reconcile_task = None
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    # Replies

    def _handle_reply(self, reply: AckReply) -> None:
        collection = self._refs.pop(reply.ref, None)
        if collection is None:
            # Heartbeat and leave replies, and replies to superseded joins
            logger.debug(f"Reply for untracked ref {reply.ref} on {reply.topic}: {reply.status.value}")
            return

        handle = self._handles.get(collection)
        if handle is not None and handle.ref == reply.ref:
            handle.status = AckStatus.CONFIRMED if reply.ok else AckStatus.FAILED
            handle.detail = reply.detail

        if reply.ok:
            logger.info(f"Joined {collection} (ref {reply.ref})")
            self._settle(reply.ref, SubscriptionStatus.CONFIRMED, reply.detail)
        else:
            logger.warning(f"Upstream rejected join of {collection} (ref {reply.ref}): {reply.detail}")
            self._settle(reply.ref, SubscriptionStatus.REJECTED, reply.detail)

    def _handle_topic_closed(self, frame: TopicClosed) -> None:
        collection = self.codec.slug_for(frame.topic)
        if collection is None:
            return

        if frame.ref is not None and self._refs.get(frame.ref) == collection:
            self._refs.pop(frame.ref, None)
            self._settle(frame.ref, SubscriptionStatus.REJECTED, {"reason": "topic closed"})

        if collection not in self._active:
            logger.info(f"Topic {frame.topic} closed")
            return

        handle = self._handles.get(collection)
        if handle is not None:
            if handle.status is AckStatus.PENDING and handle.ref in self._pending:
                self._refs.pop(handle.ref, None)
                self._settle(handle.ref, SubscriptionStatus.REJECTED, {"reason": "topic closed"})
            handle.status = AckStatus.FAILED
            handle.detail = {"reason": "error" if frame.error else "closed"}
        logger.warning(f"Upstream closed active topic {frame.topic}; it will be rejoined on the next connection")

    # Join / leave

    async def _await_join(self, subscriber: str, collection: str) -> SubscriptionResult:
        handle = self._handles.get(collection)
        if handle is not None and handle.generation == self._generation:
            if handle.status is AckStatus.CONFIRMED:
                return SubscriptionResult(subscriber, collection, SubscriptionStatus.CONFIRMED, ref=handle.ref)
            if handle.status is AckStatus.PENDING and handle.ref not in self._pending:
                # A join is outstanding but its rendezvous already expired
                return SubscriptionResult(subscriber, collection, SubscriptionStatus.UNCONFIRMED, ref=handle.ref)

        pending = None
        if handle is not None and handle.status is AckStatus.PENDING:
            pending = self._pending.get(handle.ref)
        if pending is None:
            pending = await self._issue_join(collection)
        if pending is None:
            return SubscriptionResult(subscriber, collection, SubscriptionStatus.PENDING)

        status, detail = await asyncio.shield(pending.future)
        return SubscriptionResult(subscriber, collection, status, ref=pending.ref, detail=detail)

    async def _issue_join(self, collection: str) -> Optional[_PendingAck]:
        """Send a join with a fresh ref; None when it could not be sent."""
        ref = self.supervisor.next_ref()
        handle = TopicHandle(collection, ref, self._generation)
        self._handles[collection] = handle
        self._refs[ref] = collection
        pending = self._register_pending(ref, collection)

        try:
            await self.supervisor.send(self.codec.join_frame(collection, ref))
        except (TransportFailureError, asyncio.CancelledError) as e:
            if self._handles.get(collection) is handle:
                del self._handles[collection]
            self._refs.pop(ref, None)
            self._settle(ref, SubscriptionStatus.PENDING, {"reason": "send failed"})
            if isinstance(e, asyncio.CancelledError):
                raise
            logger.error(f"Failed to join {collection}: {e}")
            return None

        self.joins_sent += 1
        logger.info(f"Subscribing to collection {collection} (ref {ref})")
        return pending

    async def _leave(self, collection: str) -> Optional[int]:
        """Send a leave for the collection's handle and discard it."""
        handle = self._handles.pop(collection, None)
        if handle is None:
            return None
        self._refs.pop(handle.ref, None)
        self._settle(handle.ref, SubscriptionStatus.REMOVED, {"reason": "left"})

        if not self.is_connected():
            return None

        try:
            await self.supervisor.send(self.codec.leave_frame(collection, handle.ref))
        except TransportFailureError as e:
            logger.error(f"Failed to leave {collection}: {e}")
            return None

        self.leaves_sent += 1
        logger.info(
            f"Left {collection} (ref {handle.ref}); events may still arrive "
            f"briefly while upstream unwinds the topic"
        )
        return handle.ref

    # Ack rendezvous table

    def _register_pending(self, ref: int, collection: str) -> _PendingAck:
        loop = asyncio.get_running_loop()
        pending = _PendingAck(
            ref=ref,
            collection=collection,
            future=loop.create_future(),
            deadline=loop.call_later(self.ack_timeout, self._expire, ref),
        )
        self._pending[ref] = pending
        return pending

    def _expire(self, ref: int) -> None:
        pending = self._pending.get(ref)
        if pending is None:
            return
        logger.warning(f"No reply for join of {pending.collection} (ref {ref}) within {self.ack_timeout}s")
        self._settle(ref, SubscriptionStatus.UNCONFIRMED)

    def _settle(self, ref: int, status: SubscriptionStatus, detail: Optional[Dict[str, Any]] = None) -> None:
        """Resolve the rendezvous for ``ref`` exactly once and drop it."""
        pending = self._pending.pop(ref, None)
        if pending is None:
            return
        pending.deadline.cancel()
        if not pending.future.done():
            pending.future.set_result((status, detail or {}))

    def _settle_all(self, status: SubscriptionStatus, detail: Dict[str, Any]) -> None:
        for ref in list(self._pending):
            self._settle(ref, status, detail)

    # Helpers

    def _invalidate_handles(self) -> None:
        self._handles.clear()
        self._refs.clear()

    def _is_current(self, generation: int) -> bool:
        return self.is_connected() and generation == self._generation

    def _needs_join(self, collection: str, generation: int) -> bool:
        if collection not in self._active:
            return False
        handle = self._handles.get(collection)
        return not (handle is not None and handle.generation == generation and handle.live)

    def _is_held(self, collection: str) -> bool:
        return any(collection in slugs for slugs in self._subscriptions.values())

    @staticmethod
    def _check_slug(subscriber: str, collection: str) -> None:
        if not SubscriptionValidator.validate_slug(collection):
            raise InvalidSlugError(
                f"Invalid collection slug {collection!r}: only lowercase letters, numbers and hyphens are allowed",
                subscriber=subscriber, collection=collection
            )

    def _parse_filter(self, subscriber: str, kinds: Iterable[Union[str, EventKind]]) -> Optional[FrozenSet[EventKind]]:
        if isinstance(kinds, (str, EventKind)):
            kinds = [kinds]
        parsed, unknown = SubscriptionValidator.split_event_kinds(kinds)
        if unknown:
            valid = ", ".join(kind.value for kind in EventKind)
            raise InvalidEventKindError(
                f"Invalid event type(s): {', '.join(map(str, unknown))}. Valid events are: {valid}",
                kinds=unknown, subscriber=subscriber
            )
        return self._normalize_filter(parsed)

    @staticmethod
    def _normalize_filter(kinds) -> Optional[FrozenSet[EventKind]]:
        """None stands for "every kind"; a full set is stored as None too."""
        kinds = frozenset(kinds)
        if not kinds or kinds == EventKind.all():
            return None
        return kinds
