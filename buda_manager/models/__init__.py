# buda_manager/models/__init__.py
from .dataset_models import (
    DatasetExtras,
    DatasetMetadata,
    DatasetRecord,
    DatasetRequest,
    DatasetSpec,
    DatasetState,
    DockerExtras,
    WorkerHandle,
    WorkerKind,
)

__all__ = [
    "DatasetExtras",
    "DatasetMetadata",
    "DatasetRecord",
    "DatasetRequest",
    "DatasetSpec",
    "DatasetState",
    "DockerExtras",
    "WorkerHandle",
    "WorkerKind",
]
