# buda_manager/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SCHEMAS_DIR = str(Path(__file__).parent / "schemas")


class Settings(BaseSettings):
    """
    Manager configuration; every field can be set with BUDA_MANAGER_<FIELD>.

    - home: working directory (unix sockets live here); must be read/write
    - port: control API port; running as a privileged user is not required
    - docker: launch agents as containers instead of child processes
    - range: inclusive range of TCP ports handed out to agents
    - storage: storage target for the registry and default for agents
    - ca: PEM CA certificate; when set every call requires a client cert
      signed by it, sent base64-encoded in the X-Buda-Client header
    """

    # Identity
    service_name: str = os.getenv("SERVICE_NAME", "buda-manager")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Runtime
    home: str = "/var/run"
    host: str = "0.0.0.0"
    port: int = 8100
    docker: bool = False
    range: str = "2810-2890"
    storage: str = "localhost:27017/buda"
    ca: Optional[str] = None
    schemas_dir: str = _DEFAULT_SCHEMAS_DIR

    # Workers
    agent_prefix: str = "buda-agent-"
    container_port: int = 8200
    spawn_timeout_seconds: float = 10.0
    stop_timeout_seconds: float = 5.0
    startup_grace_seconds: float = 0.5
    port_retries: int = 5
    log_tail_lines: int = 200

    # Security gate
    cert_timeout_seconds: float = 5.0
    cert_cache_ttl_seconds: float = 60.0

    # RabbitMQ (empty uri disables event publishing)
    rabbitmq_uri: str = os.getenv("RABBITMQ_URI", "")
    rabbitmq_exchange: str = os.getenv("RABBITMQ_EXCHANGE", "buda.events")
    events_org: str = os.getenv("EVENTS_ORG", "buda")

    model_config = SettingsConfigDict(env_prefix="BUDA_MANAGER_", env_file=None, extra="ignore")

    @field_validator("ca", mode="before")
    @classmethod
    def _empty_ca_is_insecure(cls, v):
        if v is None or str(v).strip().lower() in {"", "0", "false", "no"}:
            return None
        return v

    @property
    def secure(self) -> bool:
        return self.ca is not None

    @property
    def port_range(self) -> Tuple[int, int]:
        lo, _, hi = self.range.partition("-")
        low, high = int(lo), int(hi or lo)
        if low > high:
            low, high = high, low
        return low, high


settings = Settings()
