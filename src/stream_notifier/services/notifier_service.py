"""Main Stream Notifier service that coordinates all components."""

import sys
from pathlib import Path
from typing import Optional, Dict, Any, Callable, List
from loguru import logger

from ..adapters.notification_adapter import LoggingNotificationSink
from ..config import NotifierConfig, create_default_config
from ..interfaces.notification import NotificationSinkInterface
from ..interfaces.persistence import PersistenceStoreInterface
from ..registry import SubscriptionRegistry
from ..router import EventRouter
from ..storage import JsonSubscriptionStore
from ..supervisor import ConnectionSupervisor, ConnectionState, ConnectFactory


PRESENCE = {
    ConnectionState.CONNECTING: "Connecting to feed...",
    ConnectionState.CONNECTED: "Monitoring collections",
    ConnectionState.DRAINING: "Reconnecting...",
    ConnectionState.DISCONNECTED: "Reconnecting...",
    ConnectionState.EXHAUSTED: "Connection failed - restart required",
}


def setup_logging(config: NotifierConfig) -> None:
    """Set up logging configuration."""
    # Remove default logger
    logger.remove()

    logger.add(
        sys.stdout,
        level=config.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    if config.log_file:
        logger.add(
            config.log_file,
            level=config.log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention="7 days"
        )


class StreamNotifierService:
    """
    Main interface for Stream Notifier.

    Wires the subscription store, registry, connection supervisor, event
    router and notification sink together. Desired state is loaded on
    ``start()``; every change is written through by the registry.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[NotifierConfig] = None,
        store: Optional[PersistenceStoreInterface] = None,
        sink: Optional[NotificationSinkInterface] = None,
        supervisor: Optional[ConnectionSupervisor] = None,
        connect_factory: Optional[ConnectFactory] = None,
        configure_logging: bool = True
    ):
        """
        Initialize Stream Notifier.

        Args:
            config_path: Path to configuration file
            config: Configuration object (alternative to config_path)
            store: Custom subscription store (for dependency injection)
            sink: Custom notification sink (for dependency injection)
            supervisor: Custom connection supervisor (for dependency injection)
            connect_factory: Transport factory passed to the default supervisor
            configure_logging: Replace loguru sinks according to the config
        """
        if config:
            self.config = config
        elif config_path:
            self.config = NotifierConfig.load_from_file(config_path)
        else:
            self.config = create_default_config()

        if configure_logging:
            setup_logging(self.config)

        self.store = store or JsonSubscriptionStore(self.config.state_file)
        self.sink = sink or LoggingNotificationSink()
        self.supervisor = supervisor or ConnectionSupervisor(
            url=self.config.resolve_stream_url(),
            websocket_config=self.config.websocket_config,
            connect_factory=connect_factory
        )
        self.registry = SubscriptionRegistry.from_config(self.config, self.store, self.supervisor)
        self.router = EventRouter(self.registry, self.sink)

        self.supervisor.add_frame_listener(self.router.handle_frame)
        self.supervisor.add_state_listener(self._report_presence)

        self.presence: str = "Offline"
        self._presence_listeners: List[Callable[[str], None]] = []
        self._is_running = False

        logger.info("Stream Notifier initialized")

    async def start(self) -> None:
        """Load desired state and begin connecting."""
        if self._is_running:
            logger.warning("Stream Notifier already running")
            return

        logger.info("Starting Stream Notifier...")
        self.registry.load()
        await self.supervisor.start()
        self._is_running = True
        logger.info("Stream Notifier started")

    async def stop(self) -> None:
        """Stop the connection and drain deliveries.

        Does not write the state file; it only ever reflects registry mutations.
        """
        if not self._is_running:
            return

        logger.info("Stopping Stream Notifier...")
        self._is_running = False

        await self.registry.close()
        await self.supervisor.stop()
        await self.router.drain()

        self.presence = "Offline"
        logger.info("Stream Notifier stopped")

    async def wait_until_stopped(self) -> None:
        """Return when the supervisor stops on its own (reconnection exhausted)."""
        await self.supervisor.wait_until_stopped()

    def is_running(self) -> bool:
        return self._is_running

    def add_presence_listener(self, callback: Callable[[str], None]) -> None:
        """Observe presence text changes (e.g. to mirror them into a chat status)."""
        self._presence_listeners.append(callback)

    def _report_presence(self, state: ConnectionState) -> None:
        presence = PRESENCE.get(state, self.presence)
        if not self._is_running and state is ConnectionState.DISCONNECTED:
            presence = "Offline"
        if presence == self.presence:
            return

        self.presence = presence
        if state is ConnectionState.EXHAUSTED:
            logger.critical(f"Presence: {presence}")
        else:
            logger.info(f"Presence: {presence}")

        for callback in list(self._presence_listeners):
            try:
                callback(presence)
            except Exception as e:
                logger.error(f"Presence listener error: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Get comprehensive status of the notifier."""
        registry_status = self.registry.get_status()
        connection = self.supervisor.get_stats()
        return {
            "running": self._is_running,
            "presence": self.presence,
            "connection_state": connection["state"],
            "active_collections": registry_status["active_collections"],
            "confirmed_topics": registry_status["confirmed_topics"],
            "total_users": registry_status["total_users"],
            "reconnect_attempts": connection["reconnect_attempts"],
            "connection": connection,
            "subscriptions": registry_status,
            "routing": self.router.get_stats(),
            "state_file": str(self.config.state_file),
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()


def create_default_service(
    state_file: Optional[Path] = None,
    sink: Optional[NotificationSinkInterface] = None,
    **kwargs
) -> StreamNotifierService:
    """
    Create a Stream Notifier with default configuration.

    Args:
        state_file: Subscriptions document path
        sink: Notification sink; defaults to logging every delivery

    Returns:
        Configured StreamNotifierService instance
    """
    config = create_default_config(state_file)
    return StreamNotifierService(config=config, sink=sink, **kwargs)
