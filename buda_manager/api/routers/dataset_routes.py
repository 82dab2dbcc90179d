# buda_manager/api/routers/dataset_routes.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import yaml
from fastapi import APIRouter, Body, Depends

from buda_manager.api.deps import get_orchestrator
from buda_manager.core.errors import BudaError, DatasetValidationError, ErrorCode
from buda_manager.models import DatasetRequest
from buda_manager.services.orchestrator import Orchestrator

router = APIRouter(tags=["datasets"])
logger = logging.getLogger("buda_manager.api.datasets")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _dataset_from(payload: Optional[DatasetRequest]) -> Optional[Mapping[str, Any]]:
    """
    Extract the declaration from the request body, parsing YAML when the
    client says so.
    """
    if payload is None or payload.dataset is None:
        return None
    if (payload.format or "").lower() == "yaml" and isinstance(payload.dataset, str):
        try:
            parsed = yaml.safe_load(payload.dataset)
        except yaml.YAMLError as e:
            logger.error("Invalid YAML dataset: %s", e)
            raise DatasetValidationError(
                ErrorCode.INVALID_DATASET_DEFINITION,
                details=[{"path": "dataset", "message": f"invalid YAML: {e}"}],
            ) from e
        return parsed if isinstance(parsed, Mapping) else None
    if isinstance(payload.dataset, Mapping):
        return payload.dataset
    return None


# ---------- reads ---------- #

@router.get("/", summary="List datasets")
async def list_datasets(orc: Orchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    return [r.to_public() for r in await orc.get_dataset_list()]


@router.get("/{dataset_id}", summary="Dataset details")
async def get_dataset(dataset_id: str, orc: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return (await orc.get_dataset_details(dataset_id)).to_public()


@router.get("/{dataset_id}/log", summary="Recent agent output")
async def get_dataset_log(dataset_id: str, orc: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    lines = await orc.dataset_log(dataset_id)
    return {"id": dataset_id, "lines": lines}


# ---------- writes ---------- #

@router.post("/", summary="Register dataset")
async def register_dataset(
    payload: Optional[DatasetRequest] = Body(default=None),
    orc: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    record = await orc.register_dataset(_dataset_from(payload))
    return record.to_public()


@router.api_route("/{dataset_id}", methods=["PUT", "PATCH"], summary="Update dataset")
async def update_dataset(
    dataset_id: str,
    payload: Optional[DatasetRequest] = Body(default=None),
    orc: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    record = await orc.update_dataset(dataset_id, _dataset_from(payload))
    return record.to_public()


@router.delete("/{dataset_id}", summary="Delete dataset")
async def delete_dataset(dataset_id: str, orc: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    record = await orc.delete_dataset(dataset_id)
    return record.to_public()


# ---------- fallback ---------- #

@router.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
async def invalid_request(path: str) -> None:
    logger.warning("Invalid request: /%s", path)
    raise BudaError(ErrorCode.INVALID_REQUEST)
