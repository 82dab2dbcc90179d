# buda_manager/services/orchestrator.py
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from buda_common.events import RabbitBus, Service
from buda_manager.config import Settings
from buda_manager.core.errors import BudaError, NotFoundError, OperationalError
from buda_manager.core.identity import compute_id
from buda_manager.core.schemas import SchemaAdmission
from buda_manager.db.dataset_repository import DatasetRepository
from buda_manager.models import DatasetRecord, DatasetSpec, DatasetState
from buda_manager.services.supervisor import WorkerSupervisor

logger = logging.getLogger("buda_manager.services.orchestrator")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """
    Owns the dataset lifecycle: admission, identity, worker start/stop and
    persistence. The registry decides which datasets must be running; the
    supervisor only knows about workers started by this process.

    Operations on the same dataset id are serialized; different ids proceed
    independently.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        registry: DatasetRepository,
        supervisor: WorkerSupervisor,
        admission: SchemaAdmission,
        bus: Optional[RabbitBus] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.supervisor = supervisor
        self.admission = admission
        self.bus = bus
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._states: Dict[str, DatasetState] = {}
        self._shutdown_started = False

    # ---------- boot / shutdown ---------- #

    async def boot(self) -> None:
        self._verify_home()

        logger.info("Connecting to storage: %s", self.settings.storage)
        try:
            await self.registry.ping()
        except Exception as e:
            logger.critical("Registry unreachable at %s", self.settings.storage, exc_info=True)
            raise RuntimeError("registry unreachable") from e
        await self.registry.ensure_indexes()

        logger.info("Restarting existing agents")
        await self.reconcile()

    def _verify_home(self) -> None:
        home = self.settings.home
        logger.debug("Check home directory exists and is readable and writable")
        if not os.path.isdir(home):
            raise RuntimeError(f"Home directory does not exist: {home}")
        if not os.access(home, os.R_OK | os.W_OK):
            raise RuntimeError(f"Invalid permissions on home directory: {home}")

    async def reconcile(self) -> None:
        """
        Start a worker for every registered dataset. Workers from a previous
        manager lifetime are assumed dead.
        """
        records = await self.registry.list()
        results = await asyncio.gather(*(self._restart(r) for r in records), return_exceptions=True)
        failed = [r.id for r, res in zip(records, results) if isinstance(res, BaseException)]
        logger.info("Reconciled %d dataset(s), %d failed", len(records), len(failed))
        for dataset_id in failed:
            logger.error("Agent for dataset %s could not be restarted", dataset_id)

    async def _restart(self, record: DatasetRecord) -> None:
        async with self._lock(record.id):
            logger.info("Starting agent for dataset: %s", record.id)
            await self.supervisor.clear_stale(record)
            self._states[record.id] = DatasetState.REGISTERING
            try:
                await self.supervisor.start(record)
            except Exception:
                self._states.pop(record.id, None)
                logger.exception("Restart failed for dataset %s", record.id)
                raise
            self._states[record.id] = DatasetState.RUNNING

    async def shutdown(self) -> None:
        """
        Stop every worker (each bounded, failures logged), then close the
        registry and the bus. Safe to call more than once.
        """
        if self._shutdown_started:
            return
        self._shutdown_started = True
        logger.info("Stopping running agents")

        try:
            records = await self.registry.list()
        except BudaError:
            logger.error("Could not list datasets during shutdown; stopping known agents only")
            records = []

        known = {r.id for r in records}
        stops = [self._bounded(self.supervisor.stop_for(r)) for r in records]
        stops += [self._bounded(self.supervisor.stop(h)) for h in self.supervisor.handles() if h.dataset_id not in known]
        await asyncio.gather(*stops)
        for dataset_id in known:
            self._states[dataset_id] = DatasetState.TERMINATED

        try:
            self.registry.close()
            logger.info("Storage disconnected")
        except Exception:
            logger.warning("Error closing registry", exc_info=True)
        if self.bus is not None:
            try:
                await self.bus.close()
            except Exception:
                logger.warning("Error closing RabbitMQ", exc_info=True)

    async def _bounded(self, op) -> None:
        try:
            await asyncio.wait_for(op, timeout=self.settings.stop_timeout_seconds + 1.0)
        except asyncio.TimeoutError:
            logger.error("Agent stop timed out; continuing shutdown")
        except Exception:
            logger.warning("Agent stop failed; continuing shutdown", exc_info=True)

    # ---------- reads ---------- #

    def state_of(self, dataset_id: str) -> Optional[DatasetState]:
        return self._states.get(dataset_id)

    async def get_dataset_list(self) -> List[DatasetRecord]:
        return await self.registry.list()

    async def get_dataset_details(self, dataset_id: str) -> DatasetRecord:
        record = await self.registry.get(dataset_id)
        if record is None:
            logger.warning("Invalid dataset id: %s", dataset_id)
            raise NotFoundError()
        return record

    async def dataset_log(self, dataset_id: str) -> List[str]:
        await self.get_dataset_details(dataset_id)
        return self.supervisor.tail(dataset_id)

    # ---------- writes ---------- #

    async def register_dataset(self, raw: Optional[Mapping[str, Any]]) -> DatasetRecord:
        """
        Admit, address, start and persist. Registering content that is
        already registered replaces the existing dataset.
        """
        logger.info("Registering new dataset")
        record = self._prepare(self.admission.validate(raw))
        logger.debug("New dataset ID: %s", record.id)

        async with self._lock(record.id):
            existing = await self.registry.get(record.id)
            if existing is not None:
                logger.info("Dataset %s already registered; replacing it", record.id)
                result = await self._replace(existing, record)
                await self._publish("dataset.updated", result)
                return result
            result = await self._register(record)
        await self._publish("dataset.registered", result)
        return result

    async def update_dataset(self, dataset_id: str, raw: Optional[Mapping[str, Any]]) -> DatasetRecord:
        """
        Delete + re-register. The new declaration is admitted before anything
        is touched; if re-registration fails the previous record is restored.
        """
        logger.info("Updating dataset: %s", dataset_id)
        record = self._prepare(self.admission.validate(raw))

        async with AsyncExitStack() as stack:
            for key in sorted({dataset_id, record.id}):
                await stack.enter_async_context(self._lock(key))

            old = await self.registry.get(dataset_id)
            if old is None:
                logger.warning("Invalid dataset id: %s", dataset_id)
                raise NotFoundError()
            if record.id != dataset_id and await self.registry.get(record.id) is not None:
                logger.info("Dataset %s is replaced by this update", record.id)
                await self._remove(record.id)
            result = await self._replace(old, record)

        await self._publish("dataset.updated", result)
        return result

    async def delete_dataset(self, dataset_id: str) -> DatasetRecord:
        logger.info("Deleting dataset: %s", dataset_id)
        async with self._lock(dataset_id):
            record = await self._remove(dataset_id)
        await self._publish("dataset.deleted", record)
        return record

    # ---------- internals (caller holds the id lock) ---------- #

    def _prepare(self, spec: DatasetSpec) -> DatasetRecord:
        record = DatasetRecord.model_validate(spec.model_dump())
        if not record.data.storage.host:
            record.data.storage.host = self.settings.storage
        now = _utcnow()
        record.metadata.issued = record.metadata.issued or now
        record.metadata.modified = record.metadata.modified or now
        record.extras.id = compute_id(record)
        return record

    async def _register(self, record: DatasetRecord) -> DatasetRecord:
        self._states[record.id] = DatasetState.REGISTERING
        try:
            handle = await self.supervisor.start(record)
        except Exception as e:
            self._states.pop(record.id, None)
            if isinstance(e, BudaError):
                raise
            logger.exception("Unexpected error starting the agent for dataset %s", record.id)
            raise OperationalError(f"cannot start agent for {record.id}: {e}") from e

        try:
            await self.registry.insert(record)
        except Exception as e:
            logger.error("Persisting dataset %s failed; stopping its agent", record.id)
            await self.supervisor.stop(handle)
            self._states.pop(record.id, None)
            if isinstance(e, BudaError):
                raise
            raise OperationalError(f"cannot persist dataset {record.id}: {e}") from e

        self._states[record.id] = DatasetState.RUNNING
        logger.info("Dataset created: %s", record.id)
        return record

    async def _remove(self, dataset_id: str) -> DatasetRecord:
        previous = self._states.get(dataset_id)
        self._states[dataset_id] = DatasetState.DELETING
        record = await self.registry.remove_by_id(dataset_id)
        if record is None:
            if previous is None:
                self._states.pop(dataset_id, None)
            else:
                self._states[dataset_id] = previous
            logger.warning("Invalid dataset id: %s", dataset_id)
            raise NotFoundError()

        await self.supervisor.stop_for(record)
        self._states.pop(dataset_id, None)
        logger.info("Dataset deleted: %s", dataset_id)
        return record

    async def _replace(self, old: DatasetRecord, new: DatasetRecord) -> DatasetRecord:
        self._states[old.id] = DatasetState.UPDATING
        await self._remove(old.id)
        try:
            return await self._register(new)
        except Exception as e:
            logger.error("Re-registration failed while updating %s; restoring previous record", old.id)
            await self._restore(old)
            raise OperationalError(f"update of {old.id} failed: {e}") from e

    async def _restore(self, old: DatasetRecord) -> None:
        try:
            await self._register(old)
        except Exception:
            logger.critical("Dataset %s could not be restored after a failed update", old.id, exc_info=True)

    @asynccontextmanager
    async def _lock(self, dataset_id: str) -> AsyncIterator[None]:
        """Per-id lock; the entry is dropped once nobody holds or waits on it."""
        lock = self._locks.get(dataset_id)
        if lock is None:
            lock = self._locks[dataset_id] = asyncio.Lock()
        self._lock_users[dataset_id] = self._lock_users.get(dataset_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[dataset_id] -= 1
            if not self._lock_users[dataset_id]:
                del self._lock_users[dataset_id]
                del self._locks[dataset_id]

    async def _publish(self, event: str, record: DatasetRecord) -> None:
        if self.bus is None:
            return
        await self.bus.publish_quietly(
            service=Service.MANAGER,
            event=event,
            payload={
                "id": record.id,
                "collection": record.data.storage.collection,
                "format": record.data.format,
                "endpoint": record.data.hotspot.location,
            },
        )
