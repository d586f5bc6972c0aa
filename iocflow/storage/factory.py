"""Backend registry and construction from configuration."""

import logging

from iocflow.config import StorageConfig
from iocflow.errors import ConfigError
from iocflow.storage.base import DataStore
from iocflow.storage.document import DocumentStore
from iocflow.storage.index import IndexStore
from iocflow.storage.keyvalue import KeyValueStore
from iocflow.storage.memory import MemoryStore
from iocflow.storage.relational import RelationalStore

logger = logging.getLogger("iocflow.storage")

# Registry of available storage backends
STORAGE_REGISTRY: dict[str, type[DataStore]] = {
    "memory": MemoryStore,
    "relational": RelationalStore,
    "document": DocumentStore,
    "keyvalue": KeyValueStore,
    "index": IndexStore,
}


def create_store(config: StorageConfig) -> DataStore:
    """
    Build (but do not initialize) the configured backend.

    Raises:
        ConfigError: If the backend name is not registered
    """
    store_class = STORAGE_REGISTRY.get(config.backend)
    if store_class is None:
        raise ConfigError("storage.backend", f"unknown backend {config.backend!r}")
    logger.debug(f"Using {config.backend} storage backend")
    return store_class(config)


async def open_store(config: StorageConfig) -> DataStore:
    """Build and initialize the configured backend."""
    store = create_store(config)
    await store.initialize()
    return store
