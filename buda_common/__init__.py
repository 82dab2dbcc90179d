# buda_common/__init__.py
from .models import Compression, DataSection, Hotspot, HotspotType, Storage
from .mongo import RESERVED_PREFIX, normalize_storage_uri

__all__ = [
    "Compression",
    "DataSection",
    "Hotspot",
    "HotspotType",
    "Storage",
    "RESERVED_PREFIX",
    "normalize_storage_uri",
]
