"""Mock WebSocket transport for testing the connection lifecycle."""

import asyncio
import json
from typing import Dict, List, Any, Optional, Union

from stream_notifier.codec import FrameEvent

from .mock_data import reply_frame


_CLOSED = object()


class MockWebSocket:
    """
    In-memory stand-in for a websockets client connection.

    Simulates:
    - Outbound frames, recorded in ``sent``
    - Inbound frames pushed with ``inject``
    - Upstream close (``drop``) and transport errors (``fail``)
    - Automatic join replies when ``auto_reply`` is "ok" or "error"
    """

    def __init__(self, auto_reply: Optional[str] = None, fail_sends: bool = False):
        self.auto_reply = auto_reply
        self.fail_sends = fail_sends
        self.sent: List[str] = []
        self.sent_times: List[float] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("Mock socket is closed")
        if self.fail_sends:
            raise OSError("Mock send failure")
        self.sent.append(message)
        self.sent_times.append(asyncio.get_running_loop().time())

        frame = json.loads(message)
        if self.auto_reply and frame["event"] == FrameEvent.JOIN.value:
            self.inject(reply_frame(frame["topic"], frame["ref"], status=self.auto_reply))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    # Test controls

    def inject(self, frame: Union[str, Dict[str, Any]]) -> None:
        """Queue one inbound message."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the upstream closing the connection."""
        self._incoming.put_nowait(_CLOSED)

    def fail(self, error: Optional[BaseException] = None) -> None:
        """Simulate a transport error on the receive side."""
        self._incoming.put_nowait(error or OSError("Mock transport error"))

    @property
    def sent_frames(self) -> List[Dict[str, Any]]:
        return [json.loads(message) for message in self.sent]

    def frames(self, event: Union[str, FrameEvent]) -> List[Dict[str, Any]]:
        """Sent frames with the given event name."""
        if isinstance(event, FrameEvent):
            event = event.value
        return [frame for frame in self.sent_frames if frame["event"] == event]


class MockConnector:
    """
    Connect factory handing out MockWebSocket instances.

    The first ``failures`` attempts raise; with ``fail_forever`` every
    attempt raises; with ``hang`` the handshake never completes.
    """

    def __init__(
        self,
        failures: int = 0,
        fail_forever: bool = False,
        hang: bool = False,
        auto_reply: Optional[str] = "ok"
    ):
        self.failures = failures
        self.fail_forever = fail_forever
        self.hang = hang
        self.auto_reply = auto_reply

        self.attempts = 0
        self.attempt_times: List[float] = []
        self.urls: List[str] = []
        self.sockets: List[MockWebSocket] = []

    async def __call__(self, url: str) -> MockWebSocket:
        self.attempts += 1
        self.attempt_times.append(asyncio.get_running_loop().time())
        self.urls.append(url)

        if self.fail_forever or self.attempts <= self.failures:
            raise OSError(f"Mock connection refused (attempt {self.attempts})")
        if self.hang:
            await asyncio.Event().wait()

        websocket = MockWebSocket(auto_reply=self.auto_reply)
        self.sockets.append(websocket)
        return websocket

    @property
    def latest(self) -> Optional[MockWebSocket]:
        return self.sockets[-1] if self.sockets else None

    async def wait_for_socket(self, count: int = 1, timeout: float = 2.0) -> MockWebSocket:
        """Wait until ``count`` connections have been opened."""
        await wait_until(lambda: len(self.sockets) >= count, timeout)
        return self.sockets[count - 1]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
