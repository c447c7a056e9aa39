"""JSON file storage for subscription state."""

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Any
from loguru import logger

from .interfaces.persistence import PersistenceStoreInterface
from .exceptions import StorageError


SUBSCRIPTIONS_KEY = "subscriptions"
FILTERS_KEY = "event_filters"
LEGACY_FILTERS_KEY = "eventFilters"


def empty_document() -> Dict[str, Any]:
    return {SUBSCRIPTIONS_KEY: {}, FILTERS_KEY: {}}


class JsonSubscriptionStore(PersistenceStoreInterface):
    """Subscription document kept in a single JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        """Load the document; a missing file is an empty document."""
        if not self.path.exists():
            logger.info(f"No subscriptions file at {self.path}, starting fresh")
            return empty_document()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StorageError(f"Failed to load subscriptions from {self.path}: {e}")

        if not isinstance(data, dict):
            raise StorageError(f"Subscriptions file {self.path} must contain a JSON object")

        document = empty_document()
        subscriptions = data.get(SUBSCRIPTIONS_KEY)
        if isinstance(subscriptions, dict):
            document[SUBSCRIPTIONS_KEY] = subscriptions

        filters = data.get(FILTERS_KEY, data.get(LEGACY_FILTERS_KEY))
        if isinstance(filters, dict):
            document[FILTERS_KEY] = filters

        return document

    def save(self, document: Dict[str, Any]) -> None:
        """Write the document atomically (temp file, then replace)."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to save subscriptions to {self.path}: {e}")

        logger.debug(
            f"Saved {len(document.get(SUBSCRIPTIONS_KEY, {}))} user subscriptions and "
            f"{len(document.get(FILTERS_KEY, {}))} event filters to {self.path}"
        )
