"""
Dataset lifecycle orchestration.

Verifies:
1. Admission failures have no side effects
2. Register / details / delete / update round trips through the registry
3. Re-registering identical content is an update, never a duplicate
4. Failed updates restore the previous dataset
5. Boot reconciliation and idempotent shutdown
"""

from __future__ import annotations

import asyncio
import copy
import os
from unittest.mock import AsyncMock

import pytest

from buda_manager.core.errors import (
    DatasetValidationError,
    ErrorCode,
    NotFoundError,
    OperationalError,
)
from buda_manager.models import DatasetState
from buda_manager.services.orchestrator import Orchestrator
from tests.conftest import FakeSupervisor


def _variant(spec, **changes):
    out = copy.deepcopy(spec)
    for key, value in changes.items():
        if key == "collection":
            out["data"]["storage"]["collection"] = value
        elif key == "title":
            out["metadata"]["title"] = value
        elif key == "compression":
            out["data"]["compression"] = value
    return out


class TestRegister:
    async def test_register_assigns_id_and_endpoint(self, orchestrator, registry, supervisor, air_quality_spec, air_quality_id) -> None:
        record = await orchestrator.register_dataset(air_quality_spec)

        assert record.id == air_quality_id
        assert record.data.hotspot.location == 2810
        assert record.data.storage.host == "localhost:27017/buda"
        assert record.metadata.issued is not None
        assert record.metadata.modified is not None
        assert list(registry.docs) == [air_quality_id]
        assert supervisor.started == [air_quality_id]
        assert orchestrator.state_of(air_quality_id) == DatasetState.RUNNING

    async def test_details_match_registration(self, orchestrator, air_quality_spec) -> None:
        record = await orchestrator.register_dataset(air_quality_spec)
        details = await orchestrator.get_dataset_details(record.id)
        assert details.extras.id == record.id
        assert details.data.hotspot.location == record.data.hotspot.location

    async def test_unsupported_version_has_no_side_effects(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        air_quality_spec["version"] = "7"
        with pytest.raises(DatasetValidationError) as exc:
            await orchestrator.register_dataset(air_quality_spec)
        assert exc.value.code == ErrorCode.UNSUPPORTED_SCHEMA_VERSION
        assert registry.docs == {}
        assert supervisor.started == []

    async def test_invalid_definition_has_no_side_effects(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        del air_quality_spec["data"]["storage"]["collection"]
        with pytest.raises(DatasetValidationError) as exc:
            await orchestrator.register_dataset(air_quality_spec)
        assert exc.value.code == ErrorCode.INVALID_DATASET_DEFINITION
        assert exc.value.details
        assert registry.docs == {}
        assert supervisor.started == []

    async def test_identical_content_twice_is_an_update(self, orchestrator, registry, supervisor, air_quality_spec, air_quality_id) -> None:
        first = await orchestrator.register_dataset(air_quality_spec)
        second = await orchestrator.register_dataset(copy.deepcopy(air_quality_spec))

        assert first.id == second.id == air_quality_id
        assert list(registry.docs) == [air_quality_id]
        assert supervisor.started == [air_quality_id, air_quality_id]
        assert supervisor.stopped == [air_quality_id]
        assert len(supervisor.handles()) == 1

    async def test_persistence_failure_stops_the_new_worker(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        registry.fail_insert = True
        with pytest.raises(OperationalError):
            await orchestrator.register_dataset(air_quality_spec)
        assert registry.docs == {}
        assert supervisor.handles() == []
        assert len(supervisor.stopped) == 1

    async def test_start_failure_creates_nothing(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        supervisor.fail_collections.add("airquality_mx")
        with pytest.raises(OperationalError):
            await orchestrator.register_dataset(air_quality_spec)
        assert registry.docs == {}

    async def test_explicit_host_is_kept(self, orchestrator, air_quality_spec) -> None:
        air_quality_spec["data"]["storage"]["host"] = "mongodb://db.internal:27017/aq"
        record = await orchestrator.register_dataset(air_quality_spec)
        assert record.data.storage.host == "mongodb://db.internal:27017/aq"

    async def test_different_ids_register_concurrently(self, orchestrator, registry, air_quality_spec) -> None:
        specs = [_variant(air_quality_spec, collection=f"aq_{i}") for i in range(5)]
        records = await asyncio.gather(*(orchestrator.register_dataset(s) for s in specs))
        assert len({r.id for r in records}) == 5
        assert len(registry.docs) == 5


class TestDelete:
    async def test_delete_then_details_is_not_found(self, orchestrator, supervisor, air_quality_spec) -> None:
        record = await orchestrator.register_dataset(air_quality_spec)
        removed = await orchestrator.delete_dataset(record.id)

        assert removed.id == record.id
        assert supervisor.stopped == [record.id]
        assert orchestrator.state_of(record.id) is None
        with pytest.raises(NotFoundError) as exc:
            await orchestrator.get_dataset_details(record.id)
        assert exc.value.code == ErrorCode.INVALID_ZONE_ID

    async def test_delete_unknown_id(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.delete_dataset("nope")


class TestLocks:
    async def test_unknown_ids_leave_no_locks_behind(self, orchestrator, air_quality_spec) -> None:
        for i in range(20):
            with pytest.raises(NotFoundError):
                await orchestrator.delete_dataset(f"unknown-{i}")
            with pytest.raises(NotFoundError):
                await orchestrator.update_dataset(f"missing-{i}", copy.deepcopy(air_quality_spec))
        assert orchestrator._locks == {}

    async def test_locks_are_released_after_concurrent_work(self, orchestrator, air_quality_spec) -> None:
        await asyncio.gather(*(orchestrator.register_dataset(copy.deepcopy(air_quality_spec)) for _ in range(4)))
        assert orchestrator._locks == {}

    async def test_same_id_operations_are_serialized(self, orchestrator, supervisor, air_quality_spec) -> None:
        start = supervisor.start
        running = 0
        overlap = []

        async def slow_start(record):
            nonlocal running
            running += 1
            overlap.append(running)
            await asyncio.sleep(0.01)
            running -= 1
            return await start(record)

        supervisor.start = slow_start
        await asyncio.gather(*(orchestrator.register_dataset(copy.deepcopy(air_quality_spec)) for _ in range(3)))

        assert max(overlap) == 1


class TestUpdate:
    async def test_update_to_new_id_leaves_exactly_one_record(self, orchestrator, registry, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        spec2 = _variant(air_quality_spec, title="Air Quality MX v2")

        new = await orchestrator.update_dataset(old.id, spec2)

        assert new.id != old.id
        assert list(registry.docs) == [new.id]

    async def test_update_keeping_id(self, orchestrator, registry, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        spec2 = _variant(air_quality_spec, compression="gzip")

        new = await orchestrator.update_dataset(old.id, spec2)

        assert new.id == old.id
        assert list(registry.docs) == [old.id]
        assert registry.docs[old.id]["data"]["compression"] == "gzip"

    async def test_invalid_update_leaves_old_dataset(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        bad = copy.deepcopy(air_quality_spec)
        bad["version"] = "42"

        with pytest.raises(DatasetValidationError):
            await orchestrator.update_dataset(old.id, bad)

        assert list(registry.docs) == [old.id]
        assert supervisor.stopped == []

    async def test_update_unknown_id(self, orchestrator, supervisor, air_quality_spec) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.update_dataset("missing", air_quality_spec)
        assert supervisor.started == []

    async def test_failed_reregistration_restores_old_record(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        spec2 = _variant(air_quality_spec, collection="airquality_broken")
        supervisor.fail_collections.add("airquality_broken")

        with pytest.raises(OperationalError) as exc:
            await orchestrator.update_dataset(old.id, spec2)

        assert exc.value.code == ErrorCode.INTERNAL_ERROR
        assert list(registry.docs) == [old.id]
        assert supervisor.get(old.id) is not None
        # restored on the endpoint it had before
        assert registry.docs[old.id]["data"]["hotspot"]["location"] == old.data.hotspot.location

    async def test_unexpected_start_error_restores_old_record(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        start = supervisor.start

        async def crashing_start(record):
            if record.data.storage.collection == "airquality_crash":
                raise ValueError("invalid literal for int() with base 10: 'abc'")
            return await start(record)

        supervisor.start = crashing_start
        spec2 = _variant(air_quality_spec, collection="airquality_crash")

        with pytest.raises(OperationalError) as exc:
            await orchestrator.update_dataset(old.id, spec2)

        assert exc.value.code == ErrorCode.INTERNAL_ERROR
        assert list(registry.docs) == [old.id]
        assert orchestrator.state_of(old.id) == DatasetState.RUNNING
        assert list(orchestrator._states) == [old.id]

    async def test_non_port_location_is_rejected_before_anything_changes(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        old = await orchestrator.register_dataset(air_quality_spec)
        bad = copy.deepcopy(air_quality_spec)
        bad["data"]["hotspot"]["location"] = "abc"

        with pytest.raises(DatasetValidationError) as exc:
            await orchestrator.update_dataset(old.id, bad)

        assert exc.value.code == ErrorCode.INVALID_DATASET_DEFINITION
        assert list(registry.docs) == [old.id]
        assert supervisor.stopped == []

    async def test_update_onto_existing_id_replaces_it(self, orchestrator, registry, air_quality_spec) -> None:
        a = await orchestrator.register_dataset(air_quality_spec)
        spec_b = _variant(air_quality_spec, collection="airquality_b")
        b = await orchestrator.register_dataset(spec_b)

        result = await orchestrator.update_dataset(a.id, copy.deepcopy(spec_b))

        assert result.id == b.id
        assert list(registry.docs) == [b.id]


class TestLog:
    async def test_log_for_known_dataset(self, orchestrator, air_quality_spec) -> None:
        record = await orchestrator.register_dataset(air_quality_spec)
        assert await orchestrator.dataset_log(record.id) == [f"agent {record.id[:12]} ready"]

    async def test_log_for_unknown_dataset(self, orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.dataset_log("nope")


class TestBootAndShutdown:
    async def test_boot_restarts_every_registered_dataset(self, settings, registry, admission, orchestrator, air_quality_spec) -> None:
        a = await orchestrator.register_dataset(air_quality_spec)
        b = await orchestrator.register_dataset(_variant(air_quality_spec, collection="aq_b"))

        fresh = FakeSupervisor()
        rebooted = Orchestrator(settings=settings, registry=registry, supervisor=fresh, admission=admission)
        await rebooted.boot()

        assert registry.indexes_ensured
        assert sorted(fresh.started) == sorted([a.id, b.id])
        assert sorted(fresh.stale_cleared) == sorted([a.id, b.id])
        # stored endpoints are reused
        assert fresh.get(a.id).endpoint == a.data.hotspot.location

    async def test_boot_survives_a_failing_dataset(self, settings, registry, admission, orchestrator, air_quality_spec) -> None:
        good = await orchestrator.register_dataset(air_quality_spec)
        await orchestrator.register_dataset(_variant(air_quality_spec, collection="aq_bad"))

        fresh = FakeSupervisor()
        fresh.fail_collections.add("aq_bad")
        rebooted = Orchestrator(settings=settings, registry=registry, supervisor=fresh, admission=admission)
        await rebooted.boot()

        assert fresh.started == [good.id]
        assert len(registry.docs) == 2

    async def test_unreachable_registry_is_fatal(self, orchestrator, registry) -> None:
        registry.fail_ping = True
        with pytest.raises(RuntimeError):
            await orchestrator.boot()

    async def test_missing_home_is_fatal(self, orchestrator, settings, tmp_path) -> None:
        settings.home = str(tmp_path / "does-not-exist")
        with pytest.raises(RuntimeError):
            await orchestrator.boot()

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    async def test_read_only_home_is_fatal(self, orchestrator, settings, tmp_path) -> None:
        home = tmp_path / "ro"
        home.mkdir()
        home.chmod(0o500)
        settings.home = str(home)
        try:
            with pytest.raises(RuntimeError):
                await orchestrator.boot()
        finally:
            home.chmod(0o700)

    async def test_shutdown_stops_everything_once(self, orchestrator, registry, supervisor, air_quality_spec) -> None:
        a = await orchestrator.register_dataset(air_quality_spec)
        b = await orchestrator.register_dataset(_variant(air_quality_spec, collection="aq_b"))

        await orchestrator.shutdown()
        await orchestrator.shutdown()

        assert sorted(supervisor.stopped) == sorted([a.id, b.id])
        assert registry.closed
        assert orchestrator.state_of(a.id) == DatasetState.TERMINATED


class TestEvents:
    async def test_lifecycle_events_are_published(self, settings, registry, supervisor, admission, air_quality_spec) -> None:
        bus = AsyncMock()
        orc = Orchestrator(settings=settings, registry=registry, supervisor=supervisor, admission=admission, bus=bus)

        record = await orc.register_dataset(air_quality_spec)
        await orc.register_dataset(copy.deepcopy(air_quality_spec))
        await orc.delete_dataset(record.id)

        events = [c.kwargs["event"] for c in bus.publish_quietly.await_args_list]
        assert events == ["dataset.registered", "dataset.updated", "dataset.deleted"]
        assert bus.publish_quietly.await_args_list[0].kwargs["payload"]["id"] == record.id

    async def test_shutdown_closes_the_bus(self, settings, registry, supervisor, admission) -> None:
        bus = AsyncMock()
        orc = Orchestrator(settings=settings, registry=registry, supervisor=supervisor, admission=admission, bus=bus)
        await orc.shutdown()
        bus.close.assert_awaited_once()
