# buda_common/events.py
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Optional

import aio_pika
from aio_pika import ExchangeType, Message

logger = logging.getLogger("buda_common.events")


class Service(str, Enum):
    MANAGER = "manager"
    AGENT = "agent"


def rk(org: str, service: str, event: str, version: str = "v1") -> str:
    """
    Canonical routing key: <org>.<service>.<event>.<version>
    """
    return f"{org}.{service}.{event}.{version}"


class RabbitBus:
    """
    Minimal async publisher using aio-pika.
    An empty URI disables publishing; events are still logged by callers.
    """

    def __init__(self, *, uri: str, exchange: str, org: str) -> None:
        self.uri = uri
        self.exchange = exchange
        self.org = org
        self._conn: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._chan: Optional[aio_pika.abc.AbstractChannel] = None
        self._ex: Optional[aio_pika.abc.AbstractExchange] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.uri)

    async def connect(self) -> "RabbitBus":
        if not self.enabled:
            return self
        async with self._lock:
            if self._conn and not self._conn.is_closed:
                return self
            logger.info("Rabbit: connecting...")
            self._conn = await aio_pika.connect_robust(self.uri)
            self._chan = await self._conn.channel(publisher_confirms=False)
            self._ex = await self._chan.declare_exchange(
                self.exchange, ExchangeType.TOPIC, durable=True
            )
            logger.info("Rabbit: connected; exchange declared (%s)", self.exchange)
        return self

    async def close(self) -> None:
        if self._conn and not self._conn.is_closed:
            await self._conn.close()
            logger.info("Rabbit: connection closed")
        self._conn = self._chan = self._ex = None

    async def publish(
        self,
        *,
        service: Service,
        event: str,
        payload: dict,
        version: str = "v1",
        headers: Optional[dict] = None,
    ) -> None:
        if not self.enabled:
            return
        if not self._ex:
            await self.connect()
        assert self._ex is not None

        routing_key = rk(self.org, service.value, event, version)
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        message = Message(
            body=body,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers=headers or {},
        )
        await self._ex.publish(message, routing_key=routing_key)
        logger.info("Rabbit: published %s (%d bytes)", routing_key, len(body))

    async def publish_quietly(self, **kwargs) -> None:
        """
        Best-effort publish: operational events must never break the caller.
        """
        try:
            await self.publish(**kwargs)
        except Exception:
            logger.warning("Rabbit: publish of %s failed", kwargs.get("event"), exc_info=True)
