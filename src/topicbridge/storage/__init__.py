"""
Persistence backends for the Mapping Store.

- json: one atomically-rewritten JSON file under the bridge home
- mongo: one MongoDB collection, unique index per record type
"""

from __future__ import annotations

from ..errors import ConfigurationError
from .base import PersistenceStore
from .jsonfile import JsonFileStore


def build_store(storage_settings) -> PersistenceStore:
    """Create the backend named by `storage.backend`."""
    if storage_settings.backend == "mongo":
        from .mongo import MongoStore

        uri = storage_settings.resolved_mongo_uri()
        if not uri:
            raise ConfigurationError("storage.mongo_uri is required for the mongo backend")
        return MongoStore(
            uri,
            database=storage_settings.database,
            collection=storage_settings.collection,
        )
    return JsonFileStore(storage_settings.resolved_path())


__all__ = ["PersistenceStore", "JsonFileStore", "build_store"]
