# buda_agent/db/storage.py
from __future__ import annotations

import logging
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import BulkWriteError, PyMongoError

from buda_common.models import Storage
from buda_common.mongo import database_for, normalize_storage_uri

logger = logging.getLogger("buda_agent.db.storage")


class StorageWriteError(Exception):
    """A batch could not be (fully) written."""


class MongoBatchSink:
    """
    Appends batches to the dataset's own collection. The client is owned
    by the sink and closed with it.
    """

    def __init__(self, client: AsyncIOMotorClient, collection: str, *, default_db: str = "buda") -> None:
        self._client = client
        self._col: AsyncIOMotorCollection = database_for(client, default_db)[collection]

    @classmethod
    def from_storage(
        cls,
        storage: Storage,
        *,
        fallback: str,
        default_db: str = "buda",
        connect_timeout_ms: int = 5000,
    ) -> "MongoBatchSink":
        uri = normalize_storage_uri(storage.host or fallback)
        logger.info("Storage: %s (collection=%s)", uri, storage.collection)
        client = AsyncIOMotorClient(
            uri,
            connectTimeoutMS=connect_timeout_ms,
            serverSelectionTimeoutMS=connect_timeout_ms,
        )
        return cls(client, storage.collection, default_db=default_db)

    async def write(self, docs: List[Dict[str, Any]]) -> None:
        # documents are independent: one bad document must not block the rest
        try:
            await self._col.insert_many(docs, ordered=False)
        except BulkWriteError as e:
            inserted = e.details.get("nInserted", 0)
            raise StorageWriteError(f"{len(docs) - inserted} of {len(docs)} documents rejected") from e
        except PyMongoError as e:
            raise StorageWriteError(str(e)) from e

    async def close(self) -> None:
        self._client.close()
