# buda_manager/core/schemas.py
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator
from pydantic import ValidationError

from buda_common.mongo import RESERVED_PREFIX
from buda_manager.core.errors import DatasetValidationError, ErrorCode
from buda_manager.models import DatasetSpec

logger = logging.getLogger("buda_manager.core.schemas")

SCHEMA_PREFIX = "dataset-"


def _json_safe(value: Any) -> Any:
    """
    YAML bodies can carry ints for versions and date objects for
    timestamps; bring them to the shapes a JSON body would have.
    """
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def normalize_spec(raw: Mapping[str, Any]) -> Dict[str, Any]:
    spec = _json_safe(dict(raw))
    if "version" in spec and isinstance(spec["version"], (int, float)) and not isinstance(spec["version"], bool):
        spec["version"] = str(spec["version"])
    return spec


def _path(parts) -> str:
    return ".".join(str(p) for p in parts) or "$"


class SchemaAdmission:
    """
    Versioned admission control for dataset declarations.

    Schemas (`dataset-<version>.json`) are read once from a directory into a
    read-only mapping; validation does no I/O.
    """

    def __init__(self, validators: Mapping[str, Draft202012Validator]) -> None:
        self._validators = MappingProxyType(dict(validators))

    @classmethod
    def from_directory(cls, directory: str | Path) -> "SchemaAdmission":
        validators: Dict[str, Draft202012Validator] = {}
        for path in sorted(Path(directory).glob(f"{SCHEMA_PREFIX}*.json")):
            version = path.stem[len(SCHEMA_PREFIX):]
            with path.open("r", encoding="utf-8") as f:
                schema = json.load(f)
            Draft202012Validator.check_schema(schema)
            validators[version] = Draft202012Validator(schema)
            logger.debug("Loaded dataset schema version %s from %s", version, path.name)
        if not validators:
            raise RuntimeError(f"No dataset schemas found in {directory}")
        logger.info("Dataset schemas loaded: %s", sorted(validators))
        return cls(validators)

    @property
    def versions(self) -> List[str]:
        return sorted(self._validators)

    def validate(self, raw: Optional[Mapping[str, Any]]) -> DatasetSpec:
        """
        Returns the typed spec, or raises DatasetValidationError with
        MISSING_PARAMETERS, UNSUPPORTED_SCHEMA_VERSION or
        INVALID_DATASET_DEFINITION (with every violation in `details`).
        """
        if not raw or not isinstance(raw, Mapping):
            logger.warning("Missing parameters")
            raise DatasetValidationError(ErrorCode.MISSING_PARAMETERS)

        spec = normalize_spec(raw)
        validator = self._validators.get(str(spec.get("version")))
        if validator is None:
            logger.error("Unsupported schema version: %r", spec.get("version"))
            raise DatasetValidationError(ErrorCode.UNSUPPORTED_SCHEMA_VERSION)

        details = [
            {"path": _path(err.absolute_path), "message": err.message}
            for err in sorted(validator.iter_errors(spec), key=lambda e: list(map(str, e.absolute_path)))
        ]

        collection = ((spec.get("data") or {}).get("storage") or {}).get("collection")
        if isinstance(collection, str) and collection.startswith(RESERVED_PREFIX):
            details.append({
                "path": "data.storage.collection",
                "message": f"collection names starting with '{RESERVED_PREFIX}' are reserved",
            })

        if details:
            logger.error("Invalid dataset definition: %s", details)
            raise DatasetValidationError(ErrorCode.INVALID_DATASET_DEFINITION, details=details)

        try:
            return DatasetSpec.model_validate(spec)
        except ValidationError as e:
            details = [
                {"path": _path(err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            logger.error("Invalid dataset definition: %s", details)
            raise DatasetValidationError(ErrorCode.INVALID_DATASET_DEFINITION, details=details) from e
