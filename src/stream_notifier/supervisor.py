"""Connection supervisor for the upstream feed WebSocket."""

import asyncio
import itertools
import time
import websockets
from enum import Enum
from typing import Dict, List, Any, Optional, Callable, Awaitable
from urllib.parse import urlsplit, urlunsplit
from loguru import logger

from .codec import TopicProtocolCodec, OutboundFrame, InboundFrame
from .config import WebSocketConfig
from .exceptions import (
    MalformedFrameError, ReconnectionExhaustedError, TransportFailureError
)
from .utils.backoff import compute_backoff_delay


class ConnectionState(Enum):
    """Connection state machine."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"
    EXHAUSTED = "exhausted"


class DisconnectReason(Enum):
    """Why a connection attempt or a live connection ended."""
    CONNECT_FAILED = "connect_failed"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    CLOSED = "closed"
    ERROR = "error"
    HEARTBEAT_FAILED = "heartbeat_failed"
    SEND_FAILED = "send_failed"
    ROTATION = "rotation"
    STOPPED = "stopped"


ConnectFactory = Callable[[str], Awaitable[Any]]


class ConnectionSupervisor:
    """Owns the single upstream connection.

    Connects with a handshake timeout, sends control-topic heartbeats while
    connected, reconnects with exponential backoff up to
    ``max_reconnect_attempts`` and then stops in the EXHAUSTED state.
    Every live connection gets a new ``generation`` number.

    Listeners are plain callables invoked on the event loop thread:
    ``on_connected(generation)``, ``on_disconnected(reason)``,
    ``on_frame(frame)`` and ``on_state_change(state)``. They must not block.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        websocket_config: Optional[WebSocketConfig] = None,
        codec: Optional[TopicProtocolCodec] = None,
        connect_factory: Optional[ConnectFactory] = None
    ):
        self.config = websocket_config or WebSocketConfig()
        self.url = url or self.config.url
        self.codec = codec or TopicProtocolCodec()
        self._connect_factory = connect_factory or self._default_connect

        # Simple state
        self.state = ConnectionState.DISCONNECTED
        self.websocket = None
        self.generation = 0
        self.reconnect_attempts = 0
        self.last_disconnect_reason: Optional[DisconnectReason] = None
        self.exhausted_error: Optional[ReconnectionExhaustedError] = None

        # Refs are unique for the process lifetime, so never reused across connections
        self._refs = itertools.count(1)

        # Connection management
        self._run_task: Optional[asyncio.Task] = None
        self._send_failed: Optional[asyncio.Event] = None
        self._stopping = False

        # Listeners
        self._connected_listeners: List[Callable[[int], None]] = []
        self._disconnected_listeners: List[Callable[[DisconnectReason], None]] = []
        self._frame_listeners: List[Callable[[InboundFrame], None]] = []
        self._state_listeners: List[Callable[[ConnectionState], None]] = []

        # Statistics
        self.messages_received = 0
        self.malformed_frames = 0
        self.heartbeats_sent = 0
        self.last_message_time = 0.0
        self.connected_since: Optional[float] = None

    def _default_connect(self, url: str):
        return websockets.connect(
            url,
            open_timeout=self.config.handshake_timeout,
            ping_interval=None,  # Liveness is the application-level heartbeat
            close_timeout=self.config.close_timeout
        )

    # Listener registration

    def add_connected_listener(self, callback: Callable[[int], None]) -> None:
        self._connected_listeners.append(callback)

    def add_disconnected_listener(self, callback: Callable[[DisconnectReason], None]) -> None:
        self._disconnected_listeners.append(callback)

    def add_frame_listener(self, callback: Callable[[InboundFrame], None]) -> None:
        self._frame_listeners.append(callback)

    def add_state_listener(self, callback: Callable[[ConnectionState], None]) -> None:
        self._state_listeners.append(callback)

    # Lifecycle

    async def start(self) -> None:
        """Begin connecting in the background."""
        if self._run_task and not self._run_task.done():
            return

        self._stopping = False
        self.reconnect_attempts = 0
        self.exhausted_error = None
        self._run_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Tear down the connection and cancel every timer."""
        self._stopping = True

        task = self._run_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._run_task = None

        if self.state is not ConnectionState.EXHAUSTED:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Connection supervisor stopped")

    async def wait_until_stopped(self) -> None:
        """Wait for the background loop to finish (stop or exhaustion)."""
        task = self._run_task
        if task:
            await asyncio.wait({task})

    def is_connected(self) -> bool:
        """Check if the feed connection is live."""
        return self.state is ConnectionState.CONNECTED

    def is_exhausted(self) -> bool:
        return self.state is ConnectionState.EXHAUSTED

    def next_ref(self) -> int:
        """Next correlation ref; strictly increasing."""
        return next(self._refs)

    async def send(self, frame: OutboundFrame) -> None:
        """Send one frame on the live connection.

        A failed send tears the connection down and goes through reconnection.

        Raises:
            TransportFailureError: not connected, or the send failed
        """
        websocket = self.websocket
        if self.state is not ConnectionState.CONNECTED or websocket is None:
            raise TransportFailureError(
                f"Cannot send {frame.event} for {frame.topic}: not connected",
                retry_count=self.reconnect_attempts,
                max_retries=self.config.max_reconnect_attempts
            )

        try:
            await websocket.send(self.codec.encode(frame))
        except Exception as e:
            logger.error(f"Failed to send {frame.event} for {frame.topic}: {e}")
            if self._send_failed is not None:
                self._send_failed.set()
            raise TransportFailureError(
                f"Failed to send {frame.event} for {frame.topic}: {e}",
                retry_count=self.reconnect_attempts,
                max_retries=self.config.max_reconnect_attempts
            )

        logger.debug(f"Sent {frame.event} for {frame.topic} (ref {frame.ref})")

    # Connection loop

    async def _run(self):
        """Connect, supervise and reconnect until stopped or exhausted."""
        while not self._stopping:
            reason = await self._run_connection()
            if self._stopping:
                break

            if reason is DisconnectReason.ROTATION:
                logger.info("Performing scheduled reconnect")
                continue

            if self.reconnect_attempts >= self.config.max_reconnect_attempts:
                self._exhaust()
                return

            self.reconnect_attempts += 1
            delay = compute_backoff_delay(
                self.reconnect_attempts,
                self.config.reconnect_delay_base,
                self.config.reconnect_delay_max
            )
            logger.info(
                f"Attempting to reconnect in {delay}s "
                f"(attempt {self.reconnect_attempts}/{self.config.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

    async def _open(self):
        return await self._connect_factory(self.url)

    async def _run_connection(self) -> DisconnectReason:
        """One connection generation: handshake, supervise, tear down."""
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to {self._redacted_url()}")

        try:
            websocket = await asyncio.wait_for(self._open(), timeout=self.config.handshake_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Handshake did not complete within {self.config.handshake_timeout}s")
            return self._connect_failed(DisconnectReason.HANDSHAKE_TIMEOUT)
        except Exception as e:
            logger.error(f"WebSocket connection failed: {e}")
            return self._connect_failed(DisconnectReason.CONNECT_FAILED)

        self.websocket = websocket
        self.generation += 1
        self.reconnect_attempts = 0
        self.connected_since = time.time()
        self._send_failed = asyncio.Event()
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to feed (generation {self.generation})")
        self._emit(self._connected_listeners, self.generation)

        tasks = [
            asyncio.create_task(self._receive_loop(websocket)),
            asyncio.create_task(self._heartbeat_loop(websocket)),
            asyncio.create_task(self._wait_send_failure(self._send_failed)),
        ]
        if self.config.rotation_interval:
            tasks.append(asyncio.create_task(self._rotation_timer()))

        reason = DisconnectReason.STOPPED
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            reason = self._first_reason(done)
        finally:
            await self._teardown(websocket, tasks, reason)

        return reason

    def _connect_failed(self, reason: DisconnectReason) -> DisconnectReason:
        self.last_disconnect_reason = reason
        self._set_state(ConnectionState.DISCONNECTED)
        return reason

    @staticmethod
    def _first_reason(done) -> DisconnectReason:
        reasons = [task.result() for task in done if not task.cancelled() and task.exception() is None]
        # Receive-side reasons describe the failure best, so they win ties
        for preferred in (DisconnectReason.CLOSED, DisconnectReason.ERROR):
            if preferred in reasons:
                return preferred
        return reasons[0] if reasons else DisconnectReason.ERROR

    async def _teardown(self, websocket, tasks: List[asyncio.Task], reason: DisconnectReason):
        """Cancel this generation's timers, close the socket and notify listeners."""
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if reason in (DisconnectReason.ROTATION, DisconnectReason.STOPPED):
            self._set_state(ConnectionState.DRAINING)

        self.websocket = None
        self._send_failed = None
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")

        self.connected_since = None
        self.last_disconnect_reason = reason
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"WebSocket disconnected ({reason.value})")
        self._emit(self._disconnected_listeners, reason)

    async def _receive_loop(self, websocket) -> DisconnectReason:
        """Main message processing loop."""
        try:
            async for message in websocket:
                self._handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
            return DisconnectReason.CLOSED
        except Exception as e:
            logger.error(f"Message loop error: {e}")
            return DisconnectReason.ERROR

        logger.warning("WebSocket connection closed by upstream")
        return DisconnectReason.CLOSED

    def _handle_message(self, message):
        self.messages_received += 1
        self.last_message_time = time.time()

        try:
            frame = self.codec.decode(message)
        except MalformedFrameError as e:
            self.malformed_frames += 1
            logger.warning(f"Dropping malformed frame: {e}")
            return

        logger.debug(f"Received {type(frame).__name__} on {frame.topic}")
        self._emit(self._frame_listeners, frame)

    async def _heartbeat_loop(self, websocket) -> DisconnectReason:
        """Send a liveness frame shortly after connect, then on every interval."""
        await asyncio.sleep(self.config.initial_heartbeat_delay)
        while True:
            frame = self.codec.heartbeat_frame(self.next_ref())
            try:
                await websocket.send(self.codec.encode(frame))
            except Exception as e:
                logger.error(f"Error sending heartbeat: {e}")
                return DisconnectReason.HEARTBEAT_FAILED

            self.heartbeats_sent += 1
            logger.debug(f"Sent heartbeat (ref {frame.ref})")
            await asyncio.sleep(self.config.heartbeat_interval)

    @staticmethod
    async def _wait_send_failure(event: asyncio.Event) -> DisconnectReason:
        await event.wait()
        return DisconnectReason.SEND_FAILED

    async def _rotation_timer(self) -> DisconnectReason:
        await asyncio.sleep(self.config.rotation_interval)
        return DisconnectReason.ROTATION

    def _exhaust(self):
        self.exhausted_error = ReconnectionExhaustedError(
            f"Max reconnection attempts ({self.config.max_reconnect_attempts}) reached",
            attempts=self.reconnect_attempts
        )
        self._set_state(ConnectionState.EXHAUSTED)
        logger.critical(
            f"Max reconnection attempts ({self.config.max_reconnect_attempts}) reached, "
            f"giving up. Restart required."
        )

    # Helpers

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        self.state = state
        self._emit(self._state_listeners, state)

    def _emit(self, listeners: List[Callable], *args):
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Listener error in {getattr(callback, '__name__', callback)}: {e}")

    def _redacted_url(self) -> str:
        """URL without its query string, which carries the API token."""
        parts = urlsplit(self.url)
        return urlunsplit(parts._replace(query=""))

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            "state": self.state.value,
            "generation": self.generation,
            "messages_received": self.messages_received,
            "malformed_frames": self.malformed_frames,
            "heartbeats_sent": self.heartbeats_sent,
            "last_message_time": self.last_message_time,
            "connected_since": self.connected_since,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "last_disconnect_reason": (
                self.last_disconnect_reason.value if self.last_disconnect_reason else None
            ),
        }
