# buda_manager/models/dataset_models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from buda_common.models import DataSection


# ─────────────────────────────────────────────────────────────
# Dataset declaration (client owned)
# ─────────────────────────────────────────────────────────────

class DatasetMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    description: str
    organization: str
    issued: Optional[datetime] = None
    modified: Optional[datetime] = None


class DockerExtras(BaseModel):
    image: str
    links: List[str] = Field(default_factory=list)


class DatasetExtras(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Content address, computed server side")
    handler: Optional[str] = Field(default=None, description="Executable overriding buda-agent-<format>")
    docker: Optional[DockerExtras] = None


class DatasetSpec(BaseModel):
    """
    A dataset declaration as submitted by a client. Replaced wholesale on
    update; never patched field by field.
    """
    model_config = ConfigDict(extra="allow")

    version: str
    metadata: DatasetMetadata
    data: DataSection
    extras: DatasetExtras = Field(default_factory=DatasetExtras)


class DatasetRecord(DatasetSpec):
    """
    Persisted form of a dataset: `extras.id` is always set and
    `issued`/`modified` are always present.
    """

    @property
    def id(self) -> str:
        assert self.extras.id is not None
        return self.extras.id

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python", exclude_none=True)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ─────────────────────────────────────────────────────────────
# Control API payloads
# ─────────────────────────────────────────────────────────────

class DatasetRequest(BaseModel):
    """
    Body of POST / PUT / PATCH. `dataset` is a JSON object, or a YAML
    document (string) when `format` is "yaml".
    """
    dataset: Optional[Union[Dict[str, Any], str]] = None
    format: Optional[str] = None


# ─────────────────────────────────────────────────────────────
# Lifecycle (in memory only)
# ─────────────────────────────────────────────────────────────

class DatasetState(str, Enum):
    REGISTERING = "registering"
    RUNNING = "running"
    UPDATING = "updating"
    DELETING = "deleting"
    TERMINATED = "terminated"


class WorkerKind(str, Enum):
    PROCESS = "process"
    CONTAINER = "container"


@dataclass
class WorkerHandle:
    """
    Live worker for one dataset. Never persisted: workers do not outlive
    the manager process that started them.
    """
    dataset_id: str
    kind: WorkerKind
    ref: Union[int, str]  # pid or container id
    endpoint: Union[int, str]
    name: Optional[str] = None  # container name
    process: Any = field(default=None, repr=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
