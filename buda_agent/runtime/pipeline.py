# buda_agent/runtime/pipeline.py
from __future__ import annotations

import asyncio
import itertools
import logging
import os
import stat
import uuid
import zlib
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from buda_agent.config import AgentSettings
from buda_agent.db.storage import StorageWriteError
from buda_agent.runtime.codec import GzipStreamDecoder
from buda_agent.runtime.parsers import FormatPlugin, RecordParser, plugin_for
from buda_agent.runtime.state import AgentState, RuntimeState
from buda_common.events import RabbitBus, Service
from buda_common.models import Compression, DataSection, HotspotType

logger = logging.getLogger("buda_agent.runtime")

# queue messages: (kind, connection id, payload)
_OPEN, _DATA, _END, _STOP = "open", "data", "end", "stop"
Message = Tuple[str, int, Optional[bytes]]


class BatchSink(Protocol):
    async def write(self, docs: List[Dict[str, Any]]) -> None: ...

    async def close(self) -> None: ...


class AgentRuntime:
    """
    Ingestion loop of one agent.

    Connection tasks only read (and gunzip) bytes and post them to a queue.
    A single pipeline task owns the parsers, the batch buffer and the
    counters, and also runs the inactivity timer, so none of them is ever
    touched concurrently. Batch writes run as separate tasks; a failed
    write is logged and ingestion continues.
    """

    def __init__(
        self,
        conf: DataSection,
        sink: BatchSink,
        *,
        settings: Optional[AgentSettings] = None,
        bus: Optional[RabbitBus] = None,
        plugin: Optional[FormatPlugin] = None,
    ) -> None:
        self.conf = conf
        self.sink = sink
        self.settings = settings or AgentSettings()
        self.bus = bus
        self.plugin = plugin or plugin_for(conf.format)
        self.state = RuntimeState()
        self.status = AgentState.IDLE

        self.queue: "asyncio.Queue[Message]" = asyncio.Queue()
        self._parsers: Dict[int, RecordParser] = {}
        self._broken: Set[int] = set()
        self._buffer: List[Dict[str, Any]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._connections: Set[asyncio.Task] = set()
        self._conn_ids = itertools.count(1)
        self._server: Optional[asyncio.AbstractServer] = None
        self._pipeline: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def batch_size(self) -> int:
        return max(int(self.conf.storage.batch or 5), 1)

    @property
    def endpoint(self) -> Any:
        return self.conf.hotspot.location

    @property
    def bound_address(self) -> Any:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    # ---------- lifecycle ---------- #

    async def start(self) -> None:
        self._server = await self._bind()
        self._pipeline = asyncio.create_task(self._run_pipeline(), name="buda-agent-pipeline")
        self.status = AgentState.LISTENING
        logger.info(
            "Agent ready (format=%s, endpoint=%s, batch=%d, compression=%s)",
            self.conf.format, self.endpoint, self.batch_size, self.conf.compression,
        )

    async def run(self) -> None:
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """
        Stop accepting, flush everything pending, wait (bounded) for
        in-flight writes, then release storage and bus.
        """
        if self.status in (AgentState.DRAINING, AgentState.TERMINATED):
            return
        self.status = AgentState.DRAINING
        timeout = self.settings.drain_timeout_seconds
        logger.info("Closing agent")

        if self._server is not None:
            self._server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)

        if self._pipeline is not None:
            self.queue.put_nowait((_STOP, 0, None))
            try:
                await asyncio.wait_for(self._pipeline, timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("Pipeline did not drain within %.1fs", timeout)
            except Exception:
                logger.error("Pipeline failed; pending records are lost", exc_info=True)

        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.error("%d write(s) still in flight after %.1fs; abandoning", len(pending), timeout)
                for task in pending:
                    task.cancel()

        await self._cleanup()
        self.status = AgentState.TERMINATED
        logger.info("Agent terminated: %s", self.state.snapshot())
        self._stopped.set()

    async def _cleanup(self) -> None:
        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Server close still pending")
        try:
            await self.sink.close()
            logger.info("Disconnect DB")
        except Exception:
            logger.warning("Error closing storage", exc_info=True)
        if self.bus is not None:
            try:
                await self.bus.close()
            except Exception:
                logger.warning("Error closing RabbitMQ", exc_info=True)
        if self.conf.hotspot.type == HotspotType.UNIX and self.endpoint:
            _remove_socket_file(str(self.endpoint))

    # ---------- transport ---------- #

    async def _bind(self) -> asyncio.AbstractServer:
        hotspot = self.conf.hotspot
        if hotspot.type == HotspotType.UNIX:
            if not hotspot.location:
                raise ValueError("unix hotspot requires a socket path")
            path = str(hotspot.location)
            _remove_socket_file(path)
            return await asyncio.start_unix_server(self._handle_connection, path=path)

        if hotspot.location in (None, ""):
            raise ValueError("tcp hotspot requires a port")
        return await asyncio.start_server(
            self._handle_connection,
            host=self.settings.bind_host,
            port=int(hotspot.location),
        )

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn_id = next(self._conn_ids)
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        decoder = GzipStreamDecoder() if self.conf.compression == Compression.GZIP.value else None
        self.queue.put_nowait((_OPEN, conn_id, None))
        logger.debug("Connection %d opened", conn_id)
        try:
            while True:
                chunk = await reader.read(self.settings.read_chunk_size)
                if not chunk:
                    break
                if decoder is not None:
                    chunk = decoder.feed(chunk)
                if chunk:
                    self.queue.put_nowait((_DATA, conn_id, chunk))
            if decoder is not None:
                tail = decoder.flush()
                if tail:
                    self.queue.put_nowait((_DATA, conn_id, tail))
        except zlib.error as e:
            logger.error("Connection %d: invalid gzip stream (%s); dropping the rest", conn_id, e)
        except ConnectionError as e:
            logger.warning("Connection %d reset: %s", conn_id, e)
        finally:
            self.queue.put_nowait((_END, conn_id, None))
            writer.close()
            if task is not None:
                self._connections.discard(task)
            logger.debug("Connection %d closed", conn_id)

    # ---------- pipeline ---------- #

    async def _run_pipeline(self) -> None:
        idle = self.settings.inactivity_seconds
        while True:
            try:
                kind, conn_id, payload = await asyncio.wait_for(self.queue.get(), timeout=idle)
            except asyncio.TimeoutError:
                self._on_inactivity()
                continue

            if kind == _STOP:
                break
            if kind == _OPEN:
                self._parsers[conn_id] = self.plugin.parser_factory(self.conf)
                self.status = AgentState.RECEIVING
            elif kind == _DATA:
                if conn_id in self._broken:
                    continue
                parser = self._parsers.get(conn_id)
                if parser is None:
                    parser = self._parsers[conn_id] = self.plugin.parser_factory(self.conf)
                self._accept(self._parse(conn_id, parser.feed, payload or b""))
            elif kind == _END:
                self._broken.discard(conn_id)
                parser = self._parsers.pop(conn_id, None)
                if parser is not None:
                    self._accept(self._parse(conn_id, parser.end))
                self._flush()
                logger.info("Processing done (connection %d)", conn_id)
                if not self._parsers:
                    self.status = AgentState.LISTENING

        # draining: every open stream ends here
        self._end_parsers()
        self._parsers.clear()
        self._flush()
        if self.state.in_flow:
            self._end_flow()

    def _on_inactivity(self) -> None:
        self._end_parsers()
        self._flush()
        if self.state.in_flow:
            self._end_flow()

    def _end_parsers(self) -> None:
        for conn_id, parser in list(self._parsers.items()):
            self._accept(self._parse(conn_id, parser.end))

    def _parse(self, conn_id: int, step: Callable[..., List[Any]], *args: Any) -> List[Any]:
        """
        A parser that raises loses the rest of its connection's stream; the
        pipeline and every other connection carry on.
        """
        try:
            return step(*args)
        except Exception:
            logger.error("Connection %d: parser failed; dropping the rest of the stream", conn_id, exc_info=True)
            self._parsers.pop(conn_id, None)
            self._broken.add(conn_id)
            return []

    def _accept(self, records: List[Any]) -> None:
        for raw in records:
            try:
                doc = self.plugin.transform(raw)
            except Exception:
                logger.warning("Transform failed; record dropped", exc_info=True)
                continue
            if not doc:
                continue
            if not isinstance(doc, dict):
                logger.warning("Dropping non-document record of type %s", type(doc).__name__)
                continue
            self._buffer.append(doc)
            if len(self._buffer) >= self.batch_size:
                self._flush()

    def _flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        self.status = AgentState.BATCHING
        if not self.state.in_flow:
            self._begin_flow()
        self.state.flow_batches += 1
        self.state.flow_records += len(batch)
        self._spawn(self._write(batch))
        self.status = AgentState.RECEIVING if self._parsers else AgentState.LISTENING

    async def _write(self, batch: List[Dict[str, Any]]) -> None:
        try:
            await self.sink.write(batch)
        except StorageWriteError as e:
            self.state.failed_batches += 1
            logger.error("Storage error writing batch of %d record(s): %s", len(batch), e)
            await self._publish("batch.failed", {"records": len(batch), "error": str(e)})
            return
        self.state.batch_counter += 1
        self.state.records_counter += len(batch)
        self.state.last_update = datetime.now(timezone.utc)
        logger.debug("Batch %d stored (%d record(s))", self.state.batch_counter, len(batch))

    # ---------- flows ---------- #

    def _begin_flow(self) -> None:
        self.state.flow_id = uuid.uuid4().hex
        self.state.flow_started_at = datetime.now(timezone.utc)
        self.state.flow_batches = 0
        self.state.flow_records = 0
        logger.info("Flow started: %s", self.state.flow_id)
        self._spawn(self._publish("flow.started", {"flow": self.state.flow_id}))

    def _end_flow(self) -> None:
        payload = {
            "flow": self.state.flow_id,
            "batches": self.state.flow_batches,
            "records": self.state.flow_records,
            "started_at": self.state.flow_started_at.isoformat() if self.state.flow_started_at else None,
        }
        logger.info("Flow ended: %s (%d batch(es), %d record(s))", payload["flow"], payload["batches"], payload["records"])
        self.state.flow_id = None
        self.state.flow_started_at = None
        self._spawn(self._publish("flow.ended", payload))

    async def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        if self.bus is None or not self.bus.enabled:
            return
        payload = {"collection": self.conf.storage.collection, "format": self.conf.format, **payload}
        await self.bus.publish_quietly(service=Service.AGENT, event=event, payload=payload)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _remove_socket_file(path: str) -> None:
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        return
    if stat.S_ISSOCK(mode):
        os.unlink(path)
        logger.debug("Removed stale socket %s", path)
