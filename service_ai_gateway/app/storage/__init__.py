"""
Document storage backends.
"""

from shared.config import IN_PROCESS_ENVS
from shared.logging import get_logger
from .base import DocumentStore
from .memory import InMemoryDocumentStore
from .redis_store import RedisDocumentStore

logger = get_logger("gateway.storage")


def create_store(config) -> DocumentStore:
    """Build the store selected by ``config.store_backend``."""
    if config.store_backend == "redis":
        return RedisDocumentStore(
            config.redis_url,
            key_prefix=config.redis_key_prefix,
            indexes=config.redis_indexed_fields,
        )
    if config.env not in IN_PROCESS_ENVS:
        logger.warning(
            "In-memory store outside local development; counters and ledgers are per process",
            env=config.env,
        )
    return InMemoryDocumentStore()


__all__ = ["DocumentStore", "InMemoryDocumentStore", "RedisDocumentStore", "create_store"]
