# buda_manager/core/identity.py
from __future__ import annotations

import hashlib
from typing import Any, Mapping, Union

from buda_manager.models import DatasetSpec

SEPARATOR = "|"


def _canonical_fields(spec: Mapping[str, Any]) -> list[Any]:
    data = spec["data"]
    metadata = spec["metadata"]
    hotspot_type = data["hotspot"]["type"]
    return [
        spec["version"],
        metadata["title"],
        metadata["description"],
        metadata["organization"],
        data["format"],
        data["storage"]["collection"],
        getattr(hotspot_type, "value", hotspot_type),
    ]


def compute_id(spec: Union[DatasetSpec, Mapping[str, Any]]) -> str:
    """
    Content address of a dataset: SHA-256 (hex) over the canonical fields,
    each rendered with str() and wrapped in `|` separators. Fields outside
    the canonical set (compression, batch, extras, ...) do not contribute.
    """
    if isinstance(spec, DatasetSpec):
        spec = spec.model_dump(mode="json")
    digest = SEPARATOR + "".join(f"{value}{SEPARATOR}" for value in _canonical_fields(spec))
    return hashlib.sha256(digest.encode("utf-8")).hexdigest()
