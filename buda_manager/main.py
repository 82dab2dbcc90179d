# buda_manager/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from buda_common.events import RabbitBus
from buda_common.logging import setup_logging
from buda_manager.api.deps import require_client_certificate
from buda_manager.api.routers import dataset_routes, health_routes
from buda_manager.config import Settings, settings as default_settings
from buda_manager.core.errors import BudaError, ErrorCode, OperationalError
from buda_manager.core.schemas import SchemaAdmission
from buda_manager.core.security import SecurityGate
from buda_manager.db.dataset_repository import DatasetRepository
from buda_manager.db.mongodb import create_client
from buda_manager.services.orchestrator import Orchestrator
from buda_manager.services.supervisor import WorkerSupervisor

logger = logging.getLogger("buda_manager.main")


def build_gate(cfg: Settings) -> SecurityGate:
    return SecurityGate.from_ca_file(
        cfg.ca,
        timeout_seconds=cfg.cert_timeout_seconds,
        cache_ttl_seconds=cfg.cert_cache_ttl_seconds,
    )


def build_orchestrator(cfg: Settings) -> Orchestrator:
    bus = RabbitBus(uri=cfg.rabbitmq_uri, exchange=cfg.rabbitmq_exchange, org=cfg.events_org)
    return Orchestrator(
        settings=cfg,
        registry=DatasetRepository(create_client(cfg.storage)),
        supervisor=WorkerSupervisor(cfg),
        admission=SchemaAdmission.from_directory(cfg.schemas_dir),
        bus=bus,
    )


def _error_response(exc: BudaError) -> ORJSONResponse:
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_body())


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BudaError)
    async def buda_error_handler(request: Request, exc: BudaError) -> ORJSONResponse:
        if isinstance(exc, OperationalError):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
        details = [
            {"path": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "invalid")}
            for err in exc.errors()
        ]
        logger.warning("Invalid request on %s: %s", request.url.path, details)
        return _error_response(BudaError(ErrorCode.INVALID_REQUEST, details=details))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
        logger.warning("Invalid request: %s %s (%s)", request.method, request.url.path, exc.status_code)
        return _error_response(BudaError(ErrorCode.INVALID_REQUEST))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> ORJSONResponse:
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return _error_response(OperationalError(str(exc)))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    App lifespan:
      - configure logging
      - load the CA (secure mode) and dataset schemas; failures are fatal
      - connect the event bus (optional)
      - boot the orchestrator: registry ping, indexes, restart agents
      - graceful shutdown: agents, registry, bus
    """
    cfg: Settings = app.state.settings
    if app.state.orchestrator is not None:
        # injected (tests, embedding): the owner manages boot and shutdown
        yield
        return

    setup_logging(cfg.service_name, cfg.log_level)
    logger.info("%s starting up (secure=%s, docker=%s)", cfg.service_name, cfg.secure, cfg.docker)

    app.state.gate = build_gate(cfg)
    orchestrator = build_orchestrator(cfg)
    app.state.orchestrator = orchestrator

    if orchestrator.bus is not None and orchestrator.bus.enabled:
        try:
            await orchestrator.bus.connect()
            logger.info("RabbitMQ connected (exchange=%s)", cfg.rabbitmq_exchange)
        except Exception:
            logger.warning("RabbitMQ unavailable; events will be retried on publish", exc_info=True)

    await orchestrator.boot()
    logger.info("Listening on %s:%s", cfg.host, cfg.port)

    try:
        yield
    finally:
        await orchestrator.shutdown()
        logger.info("%s shutdown complete", cfg.service_name)


def create_app(
    cfg: Optional[Settings] = None,
    *,
    orchestrator: Optional[Orchestrator] = None,
    gate: Optional[SecurityGate] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    app = FastAPI(
        title="Buda Manager",
        description="Dataset registration and ingestion agent orchestration",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
        dependencies=[Depends(require_client_certificate)],
        docs_url=None if cfg.secure else "/docs",
        redoc_url=None,
        openapi_url=None if cfg.secure else "/openapi.json",
    )
    app.state.settings = cfg
    app.state.orchestrator = orchestrator
    app.state.gate = gate or SecurityGate(None)

    _install_error_handlers(app)
    app.include_router(health_routes.router)
    app.include_router(dataset_routes.router)
    return app
