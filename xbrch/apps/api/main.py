from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from xbrch.apps.api.errors import (
    database_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from xbrch.apps.api.response import API_VERSION
from xbrch.apps.api.routes.admin import router as admin_router
from xbrch.apps.api.routes.audit import router as audit_router
from xbrch.apps.api.routes.broadcasts import router as broadcasts_router
from xbrch.apps.api.routes.health import router as health_router
from xbrch.apps.api.routes.profile import router as profile_router
from xbrch.apps.api.routes.usage import router as usage_router
from xbrch.apps.api.routes.wall import router as wall_router
from xbrch.apps.api.routes.website import router as website_router
from xbrch.core.config import get_settings
from xbrch.core.errors import DatabaseError
from xbrch.core.logging import configure_logging
from xbrch.persistence.db import Database
from xbrch.services.broadcasts import BroadcastService, close_broadcast_service


logger = logging.getLogger(__name__)


def create_app(
    *,
    database: Database | None = None,
    broadcast_service: BroadcastService | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Open the storage handle at startup unless one was injected.
        owned = None
        if getattr(app.state, "database", None) is None:
            owned = Database(settings.database_url)
            app.state.database = owned
            logger.info("database_opened url=%s", owned.engine.url.render_as_string(hide_password=True))
        try:
            yield
        finally:
            # Injected services belong to the caller; only the cached one is closed here.
            await close_broadcast_service()
            if owned is not None:
                await owned.dispose()
                app.state.database = None
                logger.info("database_closed")

    app = FastAPI(title="XBRCH Broadcast API", version=API_VERSION, lifespan=lifespan)
    # Injected handles are set eagerly; ASGI test transports do not run lifespan.
    app.state.database = database
    app.state.broadcast_service = broadcast_service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "request_complete method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(DatabaseError)
    @app.exception_handler(SQLAlchemyError)
    async def _database_exception_handler(request: Request, exc: Exception):
        return await database_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(broadcasts_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(profile_router, prefix=f"/{API_VERSION}")
    app.include_router(website_router, prefix=f"/{API_VERSION}")
    app.include_router(wall_router, prefix=f"/{API_VERSION}")
    # Expose admin endpoints for tenant plan management.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    # Expose admin-only audit endpoints for investigations.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {"/v1/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths or path.startswith("/v1/wall/public/"):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("xbrch.apps.api.main:app", host=settings.app_host, port=settings.app_port)
