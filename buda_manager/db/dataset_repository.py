# buda_manager/db/dataset_repository.py
from __future__ import annotations

import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from buda_manager.core.errors import OperationalError
from buda_manager.db.mongodb import DATASETS_COLLECTION, get_db, init_indexes
from buda_manager.models import DatasetRecord

logger = logging.getLogger("buda_manager.db.datasets")

_PROJECTION = {"_id": 0}


class DatasetRepository:
    """
    DAL for the 'sys.datasets' collection: the single source of truth about
    which datasets exist. One document per dataset keyed by `extras.id`.
    """

    def __init__(self, client: AsyncIOMotorClient) -> None:
        self._client = client
        self._db = get_db(client)
        self._col: AsyncIOMotorCollection = self._db[DATASETS_COLLECTION]

    # ---------- bootstrap ---------- #

    async def ping(self) -> None:
        await self._db.command("ping")

    async def ensure_indexes(self) -> None:
        await init_indexes(self._db)

    def close(self) -> None:
        self._client.close()

    # ---------- CRUD ---------- #

    async def list(self) -> List[DatasetRecord]:
        try:
            cursor = self._col.find({}, _PROJECTION).sort("extras.id", 1)
            return [DatasetRecord.model_validate(d) async for d in cursor]
        except PyMongoError as e:
            raise self._storage_failure("list", e) from e

    async def get(self, dataset_id: str) -> Optional[DatasetRecord]:
        try:
            doc = await self._col.find_one({"extras.id": dataset_id}, _PROJECTION)
        except PyMongoError as e:
            raise self._storage_failure("get", e) from e
        return DatasetRecord.model_validate(doc) if doc else None

    async def insert(self, record: DatasetRecord) -> DatasetRecord:
        doc = record.to_document()
        try:
            await self._col.insert_one(doc)
        except PyMongoError as e:
            raise self._storage_failure("insert", e) from e
        return record

    async def remove_by_id(self, dataset_id: str) -> Optional[DatasetRecord]:
        try:
            doc = await self._col.find_one_and_delete({"extras.id": dataset_id}, projection=_PROJECTION)
        except PyMongoError as e:
            raise self._storage_failure("remove", e) from e
        return DatasetRecord.model_validate(doc) if doc else None

    # ---------- utility ---------- #

    @staticmethod
    def _storage_failure(op: str, e: Exception) -> OperationalError:
        logger.critical("Registry %s failed: %s", op, e, exc_info=True)
        return OperationalError(f"registry {op} failed: {e}")
