# buda_agent/main.py
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from buda_agent.config import AgentSettings
from buda_agent.db.storage import MongoBatchSink
from buda_agent.runtime.pipeline import AgentRuntime
from buda_common.events import RabbitBus
from buda_common.logging import setup_logging
from buda_common.models import DataSection

logger = logging.getLogger("buda_agent.main")


def parse_args(argv: Optional[List[str]] = None, *, fmt: Optional[str] = None) -> argparse.Namespace:
    prog = f"buda-agent-{fmt}" if fmt else "buda-agent"
    parser = argparse.ArgumentParser(prog=prog, description="Buda ingestion agent")
    parser.add_argument("--conf", required=True, help="JSON-encoded data section of the dataset")
    return parser.parse_args(argv)


def load_conf(raw: str, *, fmt: Optional[str] = None) -> DataSection:
    conf = DataSection.model_validate_json(raw)
    if fmt and conf.format != fmt:
        raise ValueError(f"this agent handles '{fmt}' data, got '{conf.format}'")
    return conf


def build_runtime(conf: DataSection, settings: AgentSettings) -> AgentRuntime:
    sink = MongoBatchSink.from_storage(
        conf.storage,
        fallback=settings.fallback_storage(),
        default_db=settings.default_db,
    )
    bus = RabbitBus(uri=settings.rabbitmq_uri, exchange=settings.rabbitmq_exchange, org=settings.events_org)
    return AgentRuntime(conf, sink, settings=settings, bus=bus)


async def serve(conf: DataSection, settings: AgentSettings) -> None:
    runtime = build_runtime(conf, settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(runtime.stop()))
    await runtime.run()


def main(argv: Optional[List[str]] = None, *, fmt: Optional[str] = None) -> int:
    args = parse_args(argv, fmt=fmt)
    settings = AgentSettings()
    try:
        conf = load_conf(args.conf, fmt=fmt)
    except (ValidationError, ValueError) as e:
        setup_logging(settings.service_name, settings.log_level)
        logger.critical("Invalid --conf: %s", e)
        return 2

    setup_logging(f"buda-agent-{conf.format}", settings.log_level)
    try:
        asyncio.run(serve(conf, settings))
    except (OSError, ValueError) as e:
        logger.critical("Agent failed to start: %s", e)
        return 1
    return 0


def main_line() -> None:
    sys.exit(main(fmt="line"))


def main_jsonl() -> None:
    sys.exit(main(fmt="jsonl"))


def main_csv() -> None:
    sys.exit(main(fmt="csv"))
