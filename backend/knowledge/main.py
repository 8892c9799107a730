"""
Knowledge Pipeline API — ASGI entry point.

  create_app()
    ├─ middleware     gzip, CORS, per-request id + access log
    ├─ error handlers PipelineError → its own status / error_code,
    │                 validation → 422, anything else → opaque 500
    ├─ routers        /api/v1/{documents,maintenance,crawl,search}
    └─ probes         /health (process), /ready (database)

Callers are authenticated upstream; tenant and user arrive as the
X-Tenant-ID / X-User-ID headers and are resolved in api/dependencies.py.
Every 4xx/5xx body is an ErrorResponse.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from knowledge.api.v1.crawl import router as crawl_router
from knowledge.api.v1.documents import router as documents_router
from knowledge.api.v1.maintenance import router as maintenance_router
from knowledge.api.v1.search import router as search_router
from knowledge.core.config import settings
from knowledge.core.errors import PipelineError
from knowledge.db.session import check_db_health
from knowledge.schemas.documents import ErrorDetail, ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
TENANT_HEADERS = ["X-Tenant-ID", "X-User-ID", "X-Cron-Key"]


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start without a database; dispose the pool on the way out."""
    logger.info(
        "Knowledge pipeline starting | env=%s embedding_model=%s bucket=%s legacy=%s",
        settings.app_env,
        settings.embedding_model,
        settings.storage_bucket,
        ",".join(settings.storage_legacy_buckets) or "-",
    )

    health = await check_db_health()
    if health["status"] != "ok":
        logger.critical("Startup aborted, database unreachable | %s", health)
        raise RuntimeError(f"Database unreachable: {health}")
    if not settings.cron_key:
        logger.warning("CRON_KEY is empty; POST %s/crawl/nightly rejects every call", API_PREFIX)

    yield

    from knowledge.db.session import engine

    await engine.dispose()
    logger.info("Knowledge pipeline stopped")


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _error_json(status_code: int, body: ErrorResponse, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        details = []
        if "field" in exc.details:
            details.append(ErrorDetail(field=str(exc.details["field"]), message=exc.message, code=exc.error_code))

        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "Request rejected | path=%s code=%s status=%d message=%s",
            request.url.path, exc.error_code, exc.status_code, exc.message,
        )
        return _error_json(exc.status_code, ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        ))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        return _error_json(status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        ))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        """No stack trace or exception text leaves the process."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        return _error_json(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorResponse(
                error_code="INTERNAL_ERROR",
                message="An unexpected error occurred.",
                request_id=request_id,
            ),
            headers={"X-Request-ID": request_id},
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # last added runs outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID", *TENANT_HEADERS],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        t0 = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | tenant=%s request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - t0) * 1000,
            request.headers.get("X-Tenant-ID", "-"), request_id,
        )
        return response


# ---------------------------------------------------------------------------
# Probes (no tenant; load balancer / orchestrator)
# ---------------------------------------------------------------------------

def _install_probes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "knowledge-pipeline"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe: database reachable")
    async def ready() -> JSONResponse:
        database = await check_db_health()
        ok = database["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ok else "not_ready", "database": database},
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs = not settings.is_production
    app = FastAPI(
        title="Knowledge Ingestion & Retrieval Pipeline",
        description="Multi-tenant document ingestion, web crawling, maintenance and similarity retrieval.",
        version="1.0.0",
        docs_url="/api/docs" if docs else None,
        redoc_url="/api/redoc" if docs else None,
        openapi_url="/api/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    _install_middleware(app)
    _install_error_handlers(app)
    for router in (documents_router, maintenance_router, crawl_router, search_router):
        app.include_router(router, prefix=API_PREFIX)
    _install_probes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "knowledge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
