"""headb FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from headb import __version__
from headb.config import get_settings
from headb.db import close_db, init_db
from headb.errors import HeadbError
from headb.log import configure_logging
from headb.services.http import http_client_manager
from headb.services.oauth import device_flow_registry

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start storage and the provider client; on exit stop pollers before closing them."""
    settings = get_settings()
    configure_logging(settings.server.log_level, settings.server.log_json)

    logger.info("headb.startup", version=__version__)
    await init_db()
    await http_client_manager.startup(settings.oauth)

    yield

    logger.info("headb.shutdown", pollers=device_flow_registry.active_count)
    # Pollers use both the HTTP client and the database
    await device_flow_registry.shutdown()
    await http_client_manager.shutdown()
    await close_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title="headb",
        description="Sign-in, API keys and permissions for the headb document store",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Tag the request, its log events and its response with one request id."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(HeadbError)
    async def headb_error_handler(request: Request, exc: HeadbError):
        if exc.status_code >= 500:
            logger.error("request.failed", code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(getattr(request.state, "request_id", None)),
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    from headb.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "headb.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )
