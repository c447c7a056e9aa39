"""Configuration management for Stream Notifier."""

from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Any
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode
import json
import os

from .utils.validation import ConfigValidator
from .exceptions import ConfigurationError


DEFAULT_STREAM_URL = "wss://stream.openseabeta.com/socket/websocket"


@dataclass
class WebSocketConfig:
    """Connection lifecycle settings for the upstream feed."""
    url: str = DEFAULT_STREAM_URL
    handshake_timeout: float = 10.0  # seconds
    heartbeat_interval: float = 30.0  # seconds
    initial_heartbeat_delay: float = 1.0  # first heartbeat after connect
    reconnect_delay_base: float = 5.0  # base delay for exponential backoff
    reconnect_delay_max: float = 30.0  # max delay between reconnection attempts
    max_reconnect_attempts: int = 5
    rotation_interval: float = 300.0  # seconds - proactive reconnect, 0 disables
    close_timeout: float = 10.0


@dataclass
class NotifierConfig:
    """Main configuration for Stream Notifier."""

    # Subscription state document
    state_file: Path = field(default_factory=lambda: Path("subscriptions.json"))

    # Subscription policy
    max_subscriptions: int = 3
    ack_timeout: float = 5.0  # join acknowledgement rendezvous
    join_throttle: float = 0.5  # delay between reconciliation joins
    resubscribe_delay: float = 2.0  # settle time before reconciliation starts

    # Upstream credentials
    api_key: Optional[str] = None

    websocket_config: WebSocketConfig = field(default_factory=WebSocketConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def __post_init__(self):
        # Path conversion
        if isinstance(self.state_file, str):
            self.state_file = Path(self.state_file)
        if self.log_file and isinstance(self.log_file, str):
            self.log_file = Path(self.log_file)
        if isinstance(self.websocket_config, dict):
            self.websocket_config = WebSocketConfig(**self.websocket_config)

    @classmethod
    def load_from_file(cls, config_path: Path) -> 'NotifierConfig':
        """Load configuration from JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            config = cls()
            config.save_to_file(config_path)
            return config

        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a JSON object")

        ConfigValidator.validate_and_raise(data)

        try:
            if 'websocket_config' in data:
                data['websocket_config'] = WebSocketConfig(**data['websocket_config'])
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration option in {config_path}: {e}")

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to JSON file."""
        config_path = Path(config_path)
        data = self.to_dict()
        # Credentials belong in the environment, not in the config file
        data.pop('api_key', None)

        ConfigValidator.validate_and_raise(data)

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, 'w') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration to {config_path}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
        return data

    def get_env_credentials(self) -> Dict[str, Optional[str]]:
        """Get API credentials from environment variables."""
        return {
            'api_key': os.getenv('STREAM_API_KEY', self.api_key),
        }

    def resolve_stream_url(self) -> str:
        """Feed URL with the API token attached as ``token`` query parameter."""
        url = os.getenv('STREAM_URL', self.websocket_config.url)
        api_key = self.get_env_credentials()['api_key']
        if not api_key:
            return url

        parts = urlsplit(url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != 'token']
        query.append(('token', api_key))
        return urlunsplit(parts._replace(query=urlencode(query)))


def create_default_config(state_file: Optional[Path] = None) -> NotifierConfig:
    """Create a default configuration."""
    config = NotifierConfig()
    if state_file is not None:
        config.state_file = Path(state_file)
    return config
