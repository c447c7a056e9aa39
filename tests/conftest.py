"""Shared pytest fixtures."""

import sys

import pytest
from loguru import logger

from stream_notifier.config import WebSocketConfig
from stream_notifier.registry import SubscriptionRegistry
from stream_notifier.router import EventRouter
from stream_notifier.supervisor import ConnectionSupervisor

from fixtures import InMemorySubscriptionStore, MockConnector, RecordingSink


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo sinks installed by code under test (the CLI reconfigures loguru)."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


@pytest.fixture
def ws_config():
    """Connection timings shrunk so lifecycle tests run in milliseconds."""
    return WebSocketConfig(
        url="ws://feed.test/socket/websocket",
        handshake_timeout=0.2,
        heartbeat_interval=0.05,
        initial_heartbeat_delay=0.01,
        reconnect_delay_base=0.01,
        reconnect_delay_max=0.04,
        max_reconnect_attempts=5,
        rotation_interval=0,
        close_timeout=0.1,
    )


@pytest.fixture
def connector():
    return MockConnector(auto_reply="ok")


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def supervisor(ws_config, connector):
    supervisor = ConnectionSupervisor(websocket_config=ws_config, connect_factory=connector)
    yield supervisor
    await supervisor.stop()


@pytest.fixture
def registry(store, supervisor):
    return SubscriptionRegistry(
        store,
        supervisor=supervisor,
        max_subscriptions=3,
        ack_timeout=0.2,
        join_throttle=0.05,
        resubscribe_delay=0,
    )


@pytest.fixture
def offline_registry(store):
    """Registry with no connection at all."""
    return SubscriptionRegistry(store, max_subscriptions=3, ack_timeout=0.2, join_throttle=0.05)


@pytest.fixture
def router(registry, sink, supervisor):
    router = EventRouter(registry, sink)
    supervisor.add_frame_listener(router.handle_frame)
    return router
