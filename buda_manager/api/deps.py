# buda_manager/api/deps.py
from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from buda_manager.core.security import CLIENT_CERT_HEADER, SecurityGate
from buda_manager.services.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def require_client_certificate(
    request: Request,
    x_buda_client: Optional[str] = Header(default=None, alias=CLIENT_CERT_HEADER),
) -> None:
    """
    Applied to every route. A no-op unless the manager runs in secure mode.
    """
    gate: SecurityGate = request.app.state.gate
    await gate.check(x_buda_client)
