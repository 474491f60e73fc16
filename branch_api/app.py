"""
branch_api.app -- FastAPI application factory.

Responsibility:
    Builds the HTTP surface over ``BranchWorkflowOrchestrator``: routers,
    error mapping, and a middleware that binds a correlation id to every
    log line written while serving a request.

Architecture position:
    Outermost layer.  Routes translate JSON to orchestrator calls and DTOs
    back to JSON; no route touches a session.

Usage:
    uvicorn --factory branch_api.app:create_app
"""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request

from branch_api.errors import install_error_handlers
from branch_api.routes import branches_router, convergence_router
from branch_api.schemas import ErrorResponse
from branch_config import get_active_config
from branch_config.schema import EngineConfig
from branch_kernel import __version__
from branch_kernel.domain.guard import IdentityProvider
from branch_kernel.logging_config import LogContext, configure_logging, get_logger
from branch_services.identity import StaticIdentityProvider
from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator

logger = get_logger("api")

ERROR_RESPONSES: dict[int | str, dict] = {
    status_code: {"model": ErrorResponse}
    for status_code in (400, 401, 403, 404, 409, 422)
}

CORRELATION_HEADER = "X-Correlation-Id"


def create_app(
    orchestrator: BranchWorkflowOrchestrator | None = None,
    config: EngineConfig | None = None,
    identity: IdentityProvider | None = None,
) -> FastAPI:
    """Build the application.

    With no ``orchestrator``, configuration is loaded through
    ``get_active_config()``, logging is configured from it, and the schema
    and default target ref are bootstrapped.
    """
    if orchestrator is None:
        config = config or get_active_config()
        configure_logging(level=config.logging.level, json_output=config.logging.json)
        orchestrator = BranchWorkflowOrchestrator.from_config(
            config, identity or StaticIdentityProvider()
        )
        orchestrator.bootstrap()

    app = FastAPI(title="Branch Lifecycle Engine", version=__version__)
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        t0 = time.monotonic()
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    install_error_handlers(app)
    for router in (branches_router, convergence_router):
        app.include_router(router, responses=ERROR_RESPONSES)

    @app.get("/healthz")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app
