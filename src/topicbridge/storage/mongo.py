from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..contracts.v1 import RECORD_KEY_FIELDS, StoredRecord
from ..errors import TransientNetworkError
from .base import PersistenceStore, key_field

logger = logging.getLogger("topicbridge.storage")


class MongoStore(PersistenceStore):
    """All record types in one collection, unique per (type, data.<key>)."""

    def __init__(
        self,
        uri: str = "",
        *,
        database: str = "topicbridge",
        collection: str = "bridge",
        client: Optional[MongoClient] = None,
    ):
        self._uri = uri
        self._database = database
        self._collection_name = collection
        self._client = client
        self._owns_client = client is None
        self._collection: Optional[Collection] = None

    @property
    def collection(self) -> Collection:
        if self._collection is None:
            self.open()
        assert self._collection is not None
        return self._collection

    def open(self) -> None:
        if self._client is None:
            self._client = MongoClient(self._uri, serverSelectionTimeoutMS=5000)
        db = self._client[self._database]
        try:
            db.command("ping")
            coll = db[self._collection_name]
            for record_type, field in RECORD_KEY_FIELDS.items():
                coll.create_index(
                    [("type", ASCENDING), (f"data.{field}", ASCENDING)],
                    unique=True,
                    partialFilterExpression={"type": record_type},
                    name=f"uniq_{record_type}_{field}",
                )
        except PyMongoError as e:
            raise TransientNetworkError(f"mongo open failed: {e}") from e
        self._collection = coll
        logger.info("mongo store ready: %s.%s", self._database, self._collection_name)

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self._collection = None

    def upsert(self, record_type: str, key: str, data: Dict[str, Any]) -> None:
        field = key_field(record_type)
        body = dict(data)
        body[field] = str(key)
        envelope = StoredRecord(type=record_type, data=body).model_dump()
        update = {"$set": {"type": envelope["type"]}}
        for k, v in envelope["data"].items():
            update["$set"][f"data.{k}"] = v
        try:
            self.collection.update_one({"type": record_type, f"data.{field}": str(key)}, update, upsert=True)
        except PyMongoError as e:
            raise TransientNetworkError(f"mongo upsert failed: {e}") from e

    def find_all(self, record_type: str) -> List[Dict[str, Any]]:
        key_field(record_type)
        try:
            docs = list(self.collection.find({"type": record_type}, {"_id": 0}))
        except PyMongoError as e:
            raise TransientNetworkError(f"mongo find failed: {e}") from e
        return [dict(d.get("data") or {}) for d in docs]

    def delete(self, record_type: str, key: str) -> bool:
        field = key_field(record_type)
        try:
            res = self.collection.delete_one({"type": record_type, f"data.{field}": str(key)})
        except PyMongoError as e:
            raise TransientNetworkError(f"mongo delete failed: {e}") from e
        return bool(res.deleted_count)
