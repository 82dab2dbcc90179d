# buda_common/models.py
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────
# Data section (shared by the manager and every agent)
# ─────────────────────────────────────────────────────────────

class HotspotType(str, Enum):
    TCP = "tcp"
    UNIX = "unix"


class Compression(str, Enum):
    NONE = "none"
    GZIP = "gzip"


class Storage(BaseModel):
    """
    Where an agent writes its batches. `host` is a storage target such as
    `localhost:27017/buda` or a full `mongodb://` URI.
    """
    model_config = ConfigDict(extra="allow")

    collection: str
    host: Optional[str] = None
    batch: int = Field(default=5, ge=1)


class Hotspot(BaseModel):
    """
    Transport endpoint an agent listens on: a TCP port or a socket path.
    """
    type: HotspotType = HotspotType.TCP
    location: Optional[Union[int, str]] = None


class DataSection(BaseModel):
    """
    The `data` section of a dataset declaration. This is the only
    configuration handed to a worker (serialized as JSON, `--conf`).
    Format-specific options (e.g. `separator` for csv) ride along as extras.
    """
    model_config = ConfigDict(extra="allow", use_enum_values=True)

    format: str
    storage: Storage
    hotspot: Hotspot = Field(default_factory=Hotspot)
    compression: Compression = Compression.NONE

    def option(self, key: str, default=None):
        extra = self.model_extra or {}
        return extra.get(key, default)
