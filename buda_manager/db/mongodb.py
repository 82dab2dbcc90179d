# buda_manager/db/mongodb.py
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from buda_common.mongo import database_for, normalize_storage_uri

DEFAULT_DB = "buda"
DATASETS_COLLECTION = "sys.datasets"


def create_client(storage: str, *, connect_timeout_ms: int = 5000) -> AsyncIOMotorClient:
    """
    Motor client for the manager's storage target. Owned by the registry
    and closed on shutdown.
    """
    return AsyncIOMotorClient(
        normalize_storage_uri(storage),
        connectTimeoutMS=connect_timeout_ms,
        serverSelectionTimeoutMS=connect_timeout_ms,
    )


def get_db(client: AsyncIOMotorClient) -> AsyncIOMotorDatabase:
    return database_for(client, DEFAULT_DB)


async def init_indexes(db: AsyncIOMotorDatabase) -> None:
    """
    Minimal indexes for the registry collection.
    """
    datasets = db[DATASETS_COLLECTION]
    await datasets.create_index([("extras.id", ASCENDING)], name="uk_dataset_id", unique=True)
    await datasets.create_index([("data.storage.collection", ASCENDING)], name="ix_collection")
