# buda_manager/api/routers/health_routes.py
from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["meta"])


@router.get("/ping", summary="Liveness probe", response_class=PlainTextResponse)
def ping() -> str:
    return "pong"
