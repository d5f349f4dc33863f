"""
MongoDB key-value backend for the calibration cache.

All keys live as fields of one document, so a multi-key write is a single
``update_one`` and MongoDB applies it atomically.
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

import structlog
from pymongo import MongoClient, WriteConcern
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

logger = structlog.get_logger(__name__)

DOCUMENT_ID = "calibration"


class MongoKeyValueStore:
    def __init__(self, collection: Collection, client: Optional[MongoClient] = None):
        # w='majority' + j=True: acknowledged only once replicated and journaled
        self.write_concern = WriteConcern(w="majority", j=True)
        self.collection = collection.with_options(write_concern=self.write_concern)
        self.client = client

    @classmethod
    def connect(cls, uri: str, database: str, collection: str) -> "MongoKeyValueStore":
        try:
            client = MongoClient(uri, serverSelectionTimeoutMS=5000)
            client.admin.command("ping")
        except PyMongoError as e:
            logger.error("Failed to connect to MongoDB", uri=uri, error=str(e))
            raise
        logger.info("MongoDB connected", uri=uri, database=database, collection=collection)
        return cls(client[database][collection], client)

    def get(self, key: str) -> Optional[int]:
        doc = self.collection.find_one({"_id": DOCUMENT_ID}, {key: 1})
        if not doc or key not in doc:
            return None
        return int(doc[key])

    def get_many(self, keys: Iterable[str]) -> Dict[str, int]:
        keys = list(keys)
        doc = self.collection.find_one({"_id": DOCUMENT_ID}, {k: 1 for k in keys})
        if not doc:
            return {}
        return {k: int(doc[k]) for k in keys if k in doc}

    def put(self, key: str, value: int) -> None:
        self.put_many({key: value})

    def put_many(self, values: Mapping[str, int]) -> None:
        self.collection.update_one(
            {"_id": DOCUMENT_ID},
            {"$set": {k: int(v) for k, v in values.items()}},
            upsert=True,
        )

    def delete(self, key: str) -> None:
        self.collection.update_one({"_id": DOCUMENT_ID}, {"$unset": {key: ""}})

    def close(self) -> None:
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
