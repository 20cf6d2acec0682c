"""Durable message stores.

Usage:
    from quorum.store import build_store

    store = build_store(get_config())
"""
import logging

from quorum.config import AppSettings

from .base import MessageStore
from .memory import InMemoryMessageStore

logger = logging.getLogger(__name__)

__all__ = ["MessageStore", "InMemoryMessageStore", "build_store"]


def build_store(config: AppSettings) -> MessageStore:
    """Create the store selected by ``storage.backend``."""
    storage = config.storage
    if storage.backend == "mongo":
        # Imported lazily so the memory backend does not need the driver loaded
        from .mongo import MongoMessageStore

        url = config.secrets.mongo.url
        if not url:
            raise ValueError("storage.backend is 'mongo' but secrets.mongo.url is not set")
        logger.info("Using MongoDB message store (database=%s)", storage.database)
        return MongoMessageStore.from_url(
            url,
            database=storage.database,
            collection=storage.collection,
            counters_collection=storage.counters_collection,
            server_selection_timeout_ms=storage.server_selection_timeout_ms,
        )

    logger.info("Using in-memory message store")
    return InMemoryMessageStore()
