"""Service layer wiring the notifier components together."""

from .notifier_service import StreamNotifierService, create_default_service, setup_logging

__all__ = ['StreamNotifierService', 'create_default_service', 'setup_logging']
