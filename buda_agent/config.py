# buda_agent/config.py
from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """
    Process-level agent configuration (BUDA_AGENT_<FIELD>). Everything
    dataset specific arrives through `--conf`.
    """

    # Identity
    service_name: str = os.getenv("SERVICE_NAME", "buda-agent")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Runtime
    inactivity_ms: int = 2000
    drain_timeout_seconds: float = 5.0
    bind_host: str = "0.0.0.0"
    read_chunk_size: int = 65536

    # Storage: used when the data section carries no host. Container links
    # expose the store as STORAGE_PORT=tcp://<ip>:<port>.
    default_db: str = "buda"
    storage_port: str = os.getenv("STORAGE_PORT", "")

    # RabbitMQ (empty uri disables event publishing)
    rabbitmq_uri: str = os.getenv("RABBITMQ_URI", "")
    rabbitmq_exchange: str = os.getenv("RABBITMQ_EXCHANGE", "buda.events")
    events_org: str = os.getenv("EVENTS_ORG", "buda")

    model_config = SettingsConfigDict(env_prefix="BUDA_AGENT_", env_file=None, extra="ignore")

    @property
    def inactivity_seconds(self) -> float:
        return max(self.inactivity_ms, 1) / 1000.0

    def fallback_storage(self) -> str:
        return f"{self.storage_port or 'localhost:27017'}/{self.default_db}"
