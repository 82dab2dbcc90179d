# buda_common/mongo.py
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

# Collections under this prefix belong to the system (registry, keys, ...)
RESERVED_PREFIX = "sys."


def normalize_storage_uri(target: str) -> str:
    """
    Accepts either a bare `host:port/db` storage target or a full
    `mongodb://` / `mongodb+srv://` URI and returns a URI.
    """
    target = (target or "").strip()
    if target.startswith("mongodb://") or target.startswith("mongodb+srv://"):
        return target
    if target.startswith("tcp://"):
        # container link env vars look like tcp://172.17.0.2:27017
        target = target[len("tcp://"):]
    return f"mongodb://{target}"


def database_for(client: AsyncIOMotorClient, default_db: str) -> AsyncIOMotorDatabase:
    """
    Database named in the URI path, or `default_db` if the URI names none.
    """
    return client.get_default_database(default=default_db)
