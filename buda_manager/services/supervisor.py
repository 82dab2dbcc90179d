# buda_manager/services/supervisor.py
from __future__ import annotations

import asyncio
import logging
import os
import random
import signal
import socket
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from buda_common.models import HotspotType
from buda_manager.config import Settings
from buda_manager.core.errors import BudaError, DatasetValidationError, ErrorCode, OperationalError
from buda_manager.infra.process import ProcessRunner
from buda_manager.models import DatasetRecord, WorkerHandle, WorkerKind

logger = logging.getLogger("buda_manager.services.supervisor")
worker_log = logging.getLogger("buda_manager.worker")

SpawnFn = Callable[..., Awaitable[Any]]


class EndpointUnavailable(Exception):
    """The candidate endpoint could not be bound; try another one."""


def port_is_free(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


def _explicit_port(location: Any) -> int:
    try:
        port = int(location)
    except (TypeError, ValueError):
        port = 0
    if not 1 <= port <= 65535:
        raise DatasetValidationError(
            ErrorCode.INVALID_DATASET_DEFINITION,
            details=[{"path": "data.hotspot.location", "message": f"{location!r} is not a tcp port"}],
        )
    return port


class WorkerSupervisor:
    """
    Starts and stops one ingestion worker per dataset, either as a child
    process (`buda-agent-<format> --conf <json>`) or as a docker container.

    `start()` writes the effective endpoint back into
    `record.data.hotspot.location` so the registry stores where producers
    must send data.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runner: Optional[ProcessRunner] = None,
        spawn: Optional[SpawnFn] = None,
        port_probe: Callable[[int], bool] = port_is_free,
    ) -> None:
        self.settings = settings
        self.runner = runner or ProcessRunner(timeout_sec=settings.spawn_timeout_seconds)
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._port_probe = port_probe
        self._handles: Dict[str, WorkerHandle] = {}
        self._tails: Dict[str, Deque[str]] = {}
        self._readers: Dict[str, asyncio.Task] = {}

    # ---------- lookup ---------- #

    def get(self, dataset_id: str) -> Optional[WorkerHandle]:
        return self._handles.get(dataset_id)

    def handles(self) -> List[WorkerHandle]:
        return list(self._handles.values())

    def tail(self, dataset_id: str) -> List[str]:
        return list(self._tails.get(dataset_id, ()))

    # ---------- start ---------- #

    async def start(self, record: DatasetRecord) -> WorkerHandle:
        if self.settings.docker:
            handle = await self._start_container(record)
        else:
            handle = await self._start_process(record)
        self._handles[record.id] = handle
        logger.info(
            "Worker started for dataset %s (%s %s, endpoint=%s)",
            record.id, handle.kind.value, handle.ref, handle.endpoint,
        )
        return handle

    async def _start_process(self, record: DatasetRecord) -> WorkerHandle:
        hotspot = record.data.hotspot
        if hotspot.type == HotspotType.UNIX:
            hotspot.location = os.path.join(self.settings.home, f"{record.id}.sock")
            return await self._spawn_worker(record, retryable=False)

        if hotspot.location:
            # explicit (or previously allocated) port: a single attempt
            hotspot.location = _explicit_port(hotspot.location)
            return await self._spawn_worker(record, retryable=False)

        handle: Optional[WorkerHandle] = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(self.settings.port_retries, 1)),
                wait=wait_exponential_jitter(initial=0.05, max=0.5),
                retry=retry_if_exception_type(EndpointUnavailable),
                reraise=True,
            ):
                with attempt:
                    hotspot.location = self._candidate_port()
                    if not self._port_probe(hotspot.location):
                        logger.debug("Port %s busy, picking another", hotspot.location)
                        raise EndpointUnavailable(hotspot.location)
                    handle = await self._spawn_worker(record, retryable=True)
        except EndpointUnavailable as e:
            hotspot.location = None
            raise OperationalError(f"no usable port for dataset {record.id}: {e}") from e
        assert handle is not None
        return handle

    def _candidate_port(self) -> int:
        low, high = self.settings.port_range
        taken = {h.endpoint for h in self._handles.values() if h.kind == WorkerKind.PROCESS}
        free = [p for p in range(low, high + 1) if p not in taken]
        if not free:
            raise EndpointUnavailable("port range exhausted")
        return random.choice(free)

    async def _spawn_worker(self, record: DatasetRecord, *, retryable: bool) -> WorkerHandle:
        cmd = record.extras.handler or f"{self.settings.agent_prefix}{record.data.format}"
        conf = record.data.model_dump_json(exclude_none=True)
        logger.debug("Starting agent %s --conf %s", cmd, conf)

        try:
            proc = await asyncio.wait_for(
                self._spawn(
                    cmd,
                    "--conf",
                    conf,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=self.settings.home,
                ),
                timeout=self.settings.spawn_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OperationalError(f"timed out spawning {cmd}") from e
        except OSError as e:
            raise OperationalError(f"cannot spawn {cmd}: {e}") from e

        self._capture_output(record.id, proc)

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.startup_grace_seconds)
        except asyncio.TimeoutError:
            return WorkerHandle(
                dataset_id=record.id,
                kind=WorkerKind.PROCESS,
                ref=proc.pid,
                endpoint=record.data.hotspot.location,
                process=proc,
            )

        logger.warning("Agent %s for dataset %s exited during startup (code=%s)", cmd, record.id, proc.returncode)
        if retryable:
            raise EndpointUnavailable(record.data.hotspot.location)
        raise OperationalError(f"{cmd} exited during startup with code {proc.returncode}")

    def _capture_output(self, dataset_id: str, proc: Any) -> None:
        tail: Deque[str] = deque(maxlen=self.settings.log_tail_lines)
        self._tails[dataset_id] = tail
        if getattr(proc, "stdout", None) is None:
            return
        previous = self._readers.pop(dataset_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        self._readers[dataset_id] = asyncio.create_task(self._read_output(dataset_id, proc.stdout, tail))

    @staticmethod
    async def _read_output(dataset_id: str, stream: asyncio.StreamReader, tail: Deque[str]) -> None:
        try:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    tail.append(line)
                    worker_log.info("[%s] %s", dataset_id[:12], line)
        except (ValueError, ConnectionError):
            worker_log.warning("[%s] output capture stopped", dataset_id[:12], exc_info=True)

    async def _start_container(self, record: DatasetRecord) -> WorkerHandle:
        docker = record.extras.docker
        if docker is None:
            raise DatasetValidationError(
                ErrorCode.INVALID_DATASET_DEFINITION,
                details=[{"path": "extras.docker", "message": "required when agents run as containers"}],
            )

        name = record.data.storage.collection
        hotspot = record.data.hotspot
        if hotspot.type == HotspotType.TCP:
            # the image exposes a fixed port; docker publishes it on a host port
            hotspot.location = self.settings.container_port
        else:
            hotspot.location = os.path.join(self.settings.home, f"{record.id}.sock")

        argv = [
            "docker", "run", "-d", "-P",
            "--name", name,
            "--log-opt", "max-size=20m",
            "--log-opt", "max-file=5",
        ]
        if hotspot.type == HotspotType.UNIX:
            # the socket is created inside the container at the same path
            argv += ["-v", f"{self.settings.home}:{self.settings.home}"]
        for link in docker.links:
            argv += ["--link", link]
        argv += [docker.image, "--conf", record.data.model_dump_json(exclude_none=True)]

        result = await self.runner.run(argv)
        if not result.ok or not result.stdout:
            raise OperationalError(f"docker run failed for {name}: {result.stderr[:500]}")
        container_id = result.stdout.strip()[:12]
        self._tails[record.id] = deque(maxlen=self.settings.log_tail_lines)

        if hotspot.type == HotspotType.TCP:
            fmt = (
                '{{(index (index .NetworkSettings.Ports "%d/tcp") 0).HostPort}}'
                % self.settings.container_port
            )
            try:
                inspect = await self.runner.run(["docker", "inspect", f"-f={fmt}", container_id])
            except BudaError:
                await self._remove_container(name)
                raise
            try:
                hotspot.location = int(inspect.stdout.strip())
            except ValueError as e:
                await self._remove_container(name)
                raise OperationalError(f"cannot read published port for {name}: {inspect.stderr[:500]}") from e

        return WorkerHandle(
            dataset_id=record.id,
            kind=WorkerKind.CONTAINER,
            ref=container_id,
            endpoint=hotspot.location,
            name=name,
        )

    # ---------- stop ---------- #

    async def stop(self, handle: WorkerHandle) -> None:
        """
        Best effort: failures are logged, never raised, so a bulk shutdown
        always reaches every worker.
        """
        if self._handles.get(handle.dataset_id) is handle:
            self._handles.pop(handle.dataset_id, None)
        try:
            if handle.kind == WorkerKind.CONTAINER:
                logger.debug("Stopping container agent: %s", handle.name)
                await self._remove_container(handle.name or str(handle.ref))
            else:
                logger.debug("Stopping process agent: %s", handle.ref)
                await self._terminate(handle)
        except Exception:
            logger.warning("Failed stopping agent for dataset %s", handle.dataset_id, exc_info=True)
        reader = self._readers.pop(handle.dataset_id, None)
        if reader is not None and not reader.done():
            reader.cancel()

    async def stop_for(self, record: DatasetRecord) -> None:
        handle = self._handles.get(record.id)
        if handle is not None:
            await self.stop(handle)
        elif self.settings.docker:
            await self.clear_stale(record)
        else:
            logger.debug("No running agent for dataset %s", record.id)

    async def clear_stale(self, record: DatasetRecord) -> None:
        """
        Containers are named after their collection and may survive a
        manager restart; remove any leftover before starting a new one.
        """
        if not self.settings.docker:
            return
        try:
            await self._remove_container(record.data.storage.collection)
        except Exception:
            logger.debug("No stale container for %s", record.data.storage.collection, exc_info=True)

    async def _remove_container(self, name: str) -> None:
        result = await self.runner.run(["docker", "rm", "-f", name])
        if not result.ok:
            logger.debug("docker rm -f %s: %s", name, result.stderr[:200])

    async def _terminate(self, handle: WorkerHandle) -> None:
        proc = handle.process
        if proc is None:
            try:
                os.kill(int(handle.ref), signal.SIGTERM)
            except ProcessLookupError:
                logger.debug("Agent %s already gone", handle.ref)
            return

        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Agent %s ignored SIGTERM for %.1fs; killing", handle.ref, self.settings.stop_timeout_seconds)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
