"""
Document Intake API: application factory

  ┌──────────────────────────────────────────────────────────────┐
  │  /api/v1/documents        upload → OCR → classify → extract  │
  │  /api/v1/document-types   CRUD + infer-from-samples          │
  │  /health, /ready          probes (no auth)                   │
  └──────────────────────────────────────────────────────────────┘

Every /api/v1 route resolves the owner from the Bearer JWT. The catalog,
file store and token store are built per request; the OCR extractor and
the classifier are shared by the whole process.

Outermost first, a request passes: request-id logging, CORS, GZip, then
the router. Any IntakeError becomes an ErrorResponse carrying the
request id.

The process refuses to start (ConfigurationError) while OCR, model or
storage credentials are unset.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.document_types import router as document_types_router
from app.api.v1.documents import router as documents_router
from app.core.config import settings
from app.core.errors import ConfigurationError, IntakeError
from app.db.session import check_db_health, create_catalog_schema, engine
from app.llm.fallback import reset_circuits
from app.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

REQUEST_ID_HEADER = "X-Request-ID"


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Fail fast on missing credentials or an unreachable catalog; dispose the engine on exit."""
    logger.info("Document Intake starting | env=%s", settings.app_env)

    missing = settings.missing_credentials()
    if missing:
        logger.critical("Credentials not configured | missing=%s", ",".join(missing))
        raise ConfigurationError(f"Missing required credentials: {', '.join(missing)}")

    catalog_health = await check_db_health()
    if catalog_health["status"] != "ok":
        logger.critical("Catalog unreachable | detail=%s", catalog_health.get("detail"))
        raise RuntimeError(f"Catalog database unavailable: {catalog_health.get('detail')}")

    if settings.app_env == "development":
        await create_catalog_schema()

    reset_circuits()
    logger.info(
        "Document Intake ready | bucket=%s root=%s issuer=%s llm=%s",
        settings.s3_bucket, settings.storage_root_prefix, settings.auth_issuer, settings.llm_model,
    )

    yield

    await engine.dispose()
    logger.info("Document Intake stopped")


# ---------------------------------------------------------------------------
# Request id + access log
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get(REQUEST_ID_HEADER)
        or str(uuid.uuid4())
    )


async def tag_and_log_request(request: Request, call_next):
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    started = time.perf_counter()

    response = await call_next(request)

    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    logger.info(
        "%s %s | status=%d elapsed_ms=%.1f request_id=%s",
        request.method, request.url.path, response.status_code,
        (time.perf_counter() - started) * 1000, request.state.request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

def _error_json(
    request_id: str,
    http_status: int,
    error_code: str,
    message: str,
    details: list[ErrorDetail] | None = None,
) -> JSONResponse:
    envelope = ErrorResponse(
        error_code=error_code,
        message=message,
        details=details or [],
        request_id=request_id,
    )
    return JSONResponse(
        status_code=http_status,
        content=envelope.model_dump(mode="json"),
        headers={REQUEST_ID_HEADER: request_id},
    )


async def handle_intake_error(request: Request, exc: IntakeError) -> JSONResponse:
    """Domain errors; the detail is shown only where it is safe for the caller."""
    request_id = _request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request ended with %s | path=%s request_id=%s detail=%s",
        exc.error_code, request.url.path, request_id, exc.detail,
    )

    details = []
    if exc.expose_detail:
        details.append(ErrorDetail(field=exc.field, message=exc.detail, code=exc.error_code))
    return _error_json(request_id, exc.status_code, exc.error_code, exc.user_message, details)


async def handle_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """One ErrorDetail per failed body, path or query location."""
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in err["loc"]),
            message=err["msg"],
            code="VALIDATION_ERROR",
        )
        for err in exc.errors()
    ]
    return _error_json(
        _request_id(request), status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR", "The request is invalid.", details,
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
    return _error_json(
        request_id, status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR", "An unexpected error occurred.",
    )


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

probes = APIRouter(tags=["Operations"])


@probes.get("/health", summary="Process is up")
async def health() -> dict:
    return {"status": "ok", "service": "document-intake-api"}


@probes.get("/ready", summary="Catalog reachable and credentials present")
async def readiness() -> JSONResponse:
    catalog = await check_db_health()
    missing = settings.missing_credentials()
    ready = catalog["status"] == "ok" and not missing
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "database": catalog,
            "missing_credentials": missing,
        },
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    show_docs = not settings.is_production
    app = FastAPI(
        title="Document Intake API",
        description=(
            "OCR, document type classification, structured field extraction "
            "and sample-based document type inference."
        ),
        version="1.0.0",
        docs_url="/api/docs" if show_docs else None,
        redoc_url="/api/redoc" if show_docs else None,
        openapi_url="/api/openapi.json" if show_docs else None,
        lifespan=lifespan,
    )

    # Last added runs first
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.middleware("http")(tag_and_log_request)

    app.add_exception_handler(IntakeError, handle_intake_error)
    app.add_exception_handler(RequestValidationError, handle_invalid_request)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(probes)
    app.include_router(documents_router,      prefix="/api/v1")
    app.include_router(document_types_router, prefix="/api/v1")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
