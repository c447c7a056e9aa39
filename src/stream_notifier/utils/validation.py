"""Validation utilities for subscriptions and configuration."""

import re
from typing import List, Dict, Any, Iterable, Tuple, Set

from ..events.stream_events import EventKind
from ..exceptions import ConfigurationError


class SubscriptionValidator:
    """Validator for collection slugs and event kinds."""

    # Lowercase letters, digits and hyphens (e.g. cryptopunks, bored-ape-yacht-club)
    SLUG_PATTERN = re.compile(r'^[a-z0-9-]+$')

    @classmethod
    def validate_slug(cls, slug: str) -> bool:
        """Validate collection slug format."""
        if not isinstance(slug, str):
            return False
        return bool(cls.SLUG_PATTERN.match(slug))

    @classmethod
    def split_event_kinds(cls, values: Iterable[str]) -> Tuple[Set[EventKind], List[str]]:
        """Split raw values into recognized kinds and the unknown leftovers."""
        kinds = set()
        unknown = []
        for value in values:
            kind = EventKind.parse(value)
            if kind is None:
                unknown.append(value)
            else:
                kinds.add(kind)
        return kinds, unknown


class ConfigValidator:
    """Validator for Stream Notifier configuration."""

    @classmethod
    def validate_log_level(cls, log_level: str) -> bool:
        """Validate log level."""
        if not isinstance(log_level, str):
            return False

        valid_levels = ['TRACE', 'DEBUG', 'INFO', 'SUCCESS', 'WARNING', 'ERROR', 'CRITICAL']
        return log_level.upper() in valid_levels

    @classmethod
    def validate_positive_number(cls, value: Any, allow_zero: bool = False) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= 0 if allow_zero else value > 0

    @classmethod
    def validate_websocket_config(cls, config: Dict[str, Any]) -> List[str]:
        """Validate websocket configuration dictionary."""
        errors = []

        if 'url' in config:
            url = config['url']
            if not isinstance(url, str) or not url.startswith(('ws://', 'wss://')):
                errors.append("url must start with ws:// or wss://")

        positive_fields = [
            'handshake_timeout', 'heartbeat_interval', 'reconnect_delay_base',
            'reconnect_delay_max', 'close_timeout'
        ]
        for field in positive_fields:
            if field in config and not cls.validate_positive_number(config[field]):
                errors.append(f"{field} must be a positive number")

        for field in ['initial_heartbeat_delay', 'rotation_interval']:
            if field in config and not cls.validate_positive_number(config[field], allow_zero=True):
                errors.append(f"{field} must be zero or a positive number")

        if 'max_reconnect_attempts' in config:
            value = config['max_reconnect_attempts']
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors.append("max_reconnect_attempts must be a non-negative integer")

        base = config.get('reconnect_delay_base')
        cap = config.get('reconnect_delay_max')
        if cls.validate_positive_number(base) and cls.validate_positive_number(cap) and base > cap:
            errors.append("reconnect_delay_base must not exceed reconnect_delay_max")

        return errors

    @classmethod
    def validate_notifier_config(cls, config: Dict[str, Any]) -> List[str]:
        """Validate main configuration dictionary."""
        errors = []

        if 'log_level' in config:
            if not cls.validate_log_level(config['log_level']):
                errors.append("invalid log_level (must be one of: TRACE, DEBUG, INFO, SUCCESS, WARNING, ERROR, CRITICAL)")

        if 'max_subscriptions' in config:
            value = config['max_subscriptions']
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 25:
                errors.append("max_subscriptions must be between 1 and 25")

        for field in ['ack_timeout', 'join_throttle', 'resubscribe_delay']:
            if field in config and not cls.validate_positive_number(config[field], allow_zero=field != 'ack_timeout'):
                errors.append(f"{field} must be a positive number")

        if 'websocket_config' in config:
            if not isinstance(config['websocket_config'], dict):
                errors.append("websocket_config must be an object")
            else:
                for error in cls.validate_websocket_config(config['websocket_config']):
                    errors.append(f"websocket_config: {error}")

        return errors

    @classmethod
    def validate_and_raise(cls, config: Dict[str, Any]) -> None:
        """Validate configuration and raise ConfigurationError if invalid."""
        errors = cls.validate_notifier_config(config)
        if errors:
            raise ConfigurationError(f"Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
