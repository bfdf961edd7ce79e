"""
Tool Engine — FastAPI Server
Hosts the tenant-scoped tool routes. The ToolService is created in the lifespan,
kept on app.state and injected into each request.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolengine import __version__
from toolengine.api.routes_tools import router as tools_router
from toolengine.config.settings import settings
from toolengine.tool_builder.errors import ToolEngineError, ToolValidationError, http_status_for
from toolengine.tool_builder.service import ToolService

logger = logging.getLogger(__name__)


async def _build_service() -> ToolService:
    if settings.use_database:
        from toolengine.db.engine import create_tables
        from toolengine.db.tool_repository import ToolRepository
        await create_tables()
        logger.info("[DB] Tool store: PostgreSQL")
        return ToolService(store=ToolRepository())
    logger.info("[DB] Tool store: in-memory")
    return ToolService()


def create_app(service: Optional[ToolService] = None) -> FastAPI:
    """Build the application. Pass `service` to run against a prepared ToolService (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[TOOLS] Starting tool engine ({settings.environment})")
        app.state.tool_service = service or await _build_service()
        await app.state.tool_service.startup()
        yield
        logger.info("[TOOLS] Shutting down")
        await app.state.tool_service.shutdown()
        if settings.use_database and service is None:
            from toolengine.db.engine import dispose_engine
            await dispose_engine()

    app = FastAPI(
        title="Tool Engine",
        description="Dynamic tool execution engine: declarative HTTP API tools per tenant.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ToolEngineError)
    async def tool_engine_error(request: Request, exc: ToolEngineError):
        body = {"type": exc.code, "message": exc.message, "details": exc.details}
        if isinstance(exc, ToolValidationError):
            body["violations"] = exc.violations
        return JSONResponse(status_code=http_status_for(exc), content={"error": body})

    @app.get("/health", tags=["System"])
    async def health(request: Request):
        svc: ToolService = request.app.state.tool_service
        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment,
            "instance_cache": svc.instances.get_stats(),
            "response_cache": svc.response_cache.get_stats(),
        }

    app.include_router(tools_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
