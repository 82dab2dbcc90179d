# buda_agent/runtime/state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RECEIVING = "receiving"
    BATCHING = "batching"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass
class RuntimeState:
    """
    In-memory bookkeeping of one agent. A flow is a contiguous run of
    batches closed by an inactivity gap.
    """
    creation_time: datetime = field(default_factory=_utcnow)
    last_update: Optional[datetime] = None
    batch_counter: int = 0
    records_counter: int = 0
    failed_batches: int = 0

    flow_id: Optional[str] = None
    flow_started_at: Optional[datetime] = None
    flow_batches: int = 0
    flow_records: int = 0

    @property
    def in_flow(self) -> bool:
        return self.flow_id is not None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "creation_time": self.creation_time.isoformat(),
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "batch_counter": self.batch_counter,
            "records_counter": self.records_counter,
            "failed_batches": self.failed_batches,
        }
