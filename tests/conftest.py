"""
tests/conftest.py

Shared fixtures for the Buda test suite.

Nothing here needs MongoDB, docker or RabbitMQ: the registry and the worker
supervisor are replaced by in-memory fakes with the same async interface,
and agent tests use an in-memory batch sink.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

import pytest

from buda_common.models import HotspotType
from buda_manager.config import Settings
from buda_manager.core.errors import OperationalError
from buda_manager.core.schemas import SchemaAdmission
from buda_manager.models import DatasetRecord, WorkerHandle, WorkerKind
from buda_manager.services.orchestrator import Orchestrator


# =============================================================================
# FAKES
# =============================================================================


class FakeRegistry:
    """In-memory stand-in for DatasetRepository."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.fail_insert = False
        self.fail_ping = False
        self.closed = False
        self.indexes_ensured = False

    async def ping(self) -> None:
        if self.fail_ping:
            raise ConnectionError("registry down")

    async def ensure_indexes(self) -> None:
        self.indexes_ensured = True

    def close(self) -> None:
        self.closed = True

    async def list(self) -> List[DatasetRecord]:
        return [DatasetRecord.model_validate(d) for _, d in sorted(self.docs.items())]

    async def get(self, dataset_id: str) -> Optional[DatasetRecord]:
        doc = self.docs.get(dataset_id)
        return DatasetRecord.model_validate(doc) if doc else None

    async def insert(self, record: DatasetRecord) -> DatasetRecord:
        if self.fail_insert:
            raise OperationalError("registry insert failed")
        self.docs[record.id] = copy.deepcopy(record.to_document())
        return record

    async def remove_by_id(self, dataset_id: str) -> Optional[DatasetRecord]:
        doc = self.docs.pop(dataset_id, None)
        return DatasetRecord.model_validate(doc) if doc else None


class FakeSupervisor:
    """Records start/stop calls instead of spawning agents."""

    def __init__(self) -> None:
        self._handles: Dict[str, WorkerHandle] = {}
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.stale_cleared: List[str] = []
        self.fail_collections: set[str] = set()
        self._next_port = 2810

    async def start(self, record: DatasetRecord) -> WorkerHandle:
        if record.data.storage.collection in self.fail_collections:
            raise OperationalError(f"cannot start agent for {record.data.storage.collection}")
        hotspot = record.data.hotspot
        if hotspot.type == HotspotType.UNIX:
            hotspot.location = f"/tmp/{record.id}.sock"
        elif not hotspot.location:
            hotspot.location = self._next_port
            self._next_port += 1
        handle = WorkerHandle(
            dataset_id=record.id,
            kind=WorkerKind.PROCESS,
            ref=len(self.started) + 1000,
            endpoint=hotspot.location,
        )
        self._handles[record.id] = handle
        self.started.append(record.id)
        return handle

    async def stop(self, handle: WorkerHandle) -> None:
        self._handles.pop(handle.dataset_id, None)
        self.stopped.append(handle.dataset_id)

    async def stop_for(self, record: DatasetRecord) -> None:
        handle = self._handles.get(record.id)
        if handle is not None:
            await self.stop(handle)

    async def clear_stale(self, record: DatasetRecord) -> None:
        self.stale_cleared.append(record.id)

    def get(self, dataset_id: str) -> Optional[WorkerHandle]:
        return self._handles.get(dataset_id)

    def handles(self) -> List[WorkerHandle]:
        return list(self._handles.values())

    def tail(self, dataset_id: str) -> List[str]:
        return [f"agent {dataset_id[:12]} ready"] if dataset_id in self._handles else []


class MemorySink:
    """In-memory batch sink for agent runtime tests."""

    def __init__(self) -> None:
        self.batches: List[List[Dict[str, Any]]] = []
        self.fail_next = 0
        self.closed = False

    async def write(self, docs: List[Dict[str, Any]]) -> None:
        from buda_agent.db.storage import StorageWriteError

        if self.fail_next:
            self.fail_next -= 1
            raise StorageWriteError("simulated write failure")
        self.batches.append(list(docs))

    async def close(self) -> None:
        self.closed = True

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [doc for batch in self.batches for doc in batch]


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        home=str(tmp_path),
        storage="localhost:27017/buda",
        rabbitmq_uri="",
        ca=None,
        startup_grace_seconds=0.05,
        stop_timeout_seconds=0.5,
    )


@pytest.fixture
def admission(settings: Settings) -> SchemaAdmission:
    return SchemaAdmission.from_directory(settings.schemas_dir)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def orchestrator(settings, registry, supervisor, admission) -> Orchestrator:
    return Orchestrator(
        settings=settings,
        registry=registry,
        supervisor=supervisor,
        admission=admission,
    )


@pytest.fixture
def air_quality_spec() -> Dict[str, Any]:
    return {
        "version": "1",
        "metadata": {"title": "Air Quality MX", "description": "d", "organization": "X"},
        "data": {
            "format": "csv",
            "storage": {"collection": "airquality_mx", "batch": 50},
            "hotspot": {"type": "tcp"},
        },
    }


@pytest.fixture
def air_quality_id() -> str:
    # sha256 of "|1|Air Quality MX|d|X|csv|airquality_mx|tcp|"
    return "be38af32d9f9d0d314a10a1c20299c20aa046857bd832ee21420256e8afcdc79"
