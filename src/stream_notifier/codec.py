"""Wire codec for the topic/event/payload/ref frames of the upstream feed."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, Union

from .events.stream_events import COLLECTION_TOPIC_PREFIX, DomainEvent
from .exceptions import MalformedFrameError


CONTROL_TOPIC = "phoenix"


class FrameEvent(Enum):
    """Protocol-level event names."""
    JOIN = "phx_join"
    LEAVE = "phx_leave"
    REPLY = "phx_reply"
    CLOSE = "phx_close"
    ERROR = "phx_error"
    HEARTBEAT = "heartbeat"


class ReplyStatus(Enum):
    OK = "ok"
    ERROR = "error"


@dataclass
class OutboundFrame:
    """A request sent to the feed."""
    topic: str
    event: str
    ref: int
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AckReply:
    """Reply correlated to an earlier request by its ref."""
    topic: str
    ref: int
    status: ReplyStatus
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is ReplyStatus.OK


@dataclass
class TopicClosed:
    """The feed closed (or crashed) a topic."""
    topic: str
    ref: Optional[int] = None
    error: bool = False


@dataclass
class OtherFrame:
    """Well-formed frame this client has no use for."""
    topic: str
    event: str
    raw: Dict[str, Any] = field(default_factory=dict)


InboundFrame = Union[AckReply, TopicClosed, DomainEvent, OtherFrame]


class TopicProtocolCodec:
    """Stateless encoder/decoder for feed frames."""

    control_topic = CONTROL_TOPIC

    @staticmethod
    def topic_for(collection_slug: str) -> str:
        return f"{COLLECTION_TOPIC_PREFIX}{collection_slug}"

    @staticmethod
    def slug_for(topic: str) -> Optional[str]:
        """Collection slug addressed by a topic, None for non-collection topics."""
        if isinstance(topic, str) and topic.startswith(COLLECTION_TOPIC_PREFIX):
            return topic[len(COLLECTION_TOPIC_PREFIX):] or None
        return None

    # Outbound

    def join_frame(self, collection_slug: str, ref: int) -> OutboundFrame:
        return OutboundFrame(self.topic_for(collection_slug), FrameEvent.JOIN.value, ref)

    def leave_frame(self, collection_slug: str, ref: int) -> OutboundFrame:
        return OutboundFrame(self.topic_for(collection_slug), FrameEvent.LEAVE.value, ref)

    def heartbeat_frame(self, ref: int) -> OutboundFrame:
        return OutboundFrame(self.control_topic, FrameEvent.HEARTBEAT.value, ref)

    def encode(self, frame: OutboundFrame) -> str:
        return json.dumps({
            "topic": frame.topic,
            "event": frame.event,
            "payload": frame.payload,
            "ref": frame.ref,
        })

    # Inbound

    def decode(self, raw: Union[str, bytes]) -> InboundFrame:
        """Decode one inbound message.

        Raises:
            MalformedFrameError: the message is not a conforming frame
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise MalformedFrameError(f"Invalid JSON received: {e}", raw_data=raw)

        if not isinstance(data, dict):
            raise MalformedFrameError("Frame is not an object", raw_data=data)

        topic = data.get("topic")
        event = data.get("event")
        if not isinstance(topic, str) or not isinstance(event, str):
            raise MalformedFrameError("Frame is missing topic or event", raw_data=data)

        payload = data.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise MalformedFrameError(f"Payload for {event} is not an object", raw_data=data)

        if event == FrameEvent.REPLY.value:
            return self._decode_reply(topic, payload, data)

        if event in (FrameEvent.CLOSE.value, FrameEvent.ERROR.value):
            return TopicClosed(
                topic=topic,
                ref=self._parse_ref(data.get("ref")),
                error=event == FrameEvent.ERROR.value,
            )

        if self.slug_for(topic) and not event.startswith("phx_"):
            return DomainEvent(topic=topic, event_name=event, payload=payload)

        return OtherFrame(topic=topic, event=event, raw=data)

    def _decode_reply(self, topic: str, payload: Dict[str, Any], data: Dict[str, Any]) -> AckReply:
        ref = self._parse_ref(data.get("ref"))
        if ref is None:
            raise MalformedFrameError("Reply without a numeric ref", raw_data=data)

        try:
            status = ReplyStatus(payload.get("status"))
        except ValueError:
            raise MalformedFrameError(
                f"Reply {ref} has unknown status {payload.get('status')!r}", raw_data=data
            )

        detail = payload.get("response")
        if not isinstance(detail, dict):
            detail = {} if detail is None else {"response": detail}

        return AckReply(topic=topic, ref=ref, status=status, detail=detail)

    @staticmethod
    def _parse_ref(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None
