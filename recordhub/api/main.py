"""
FastAPI application entry-point.

    uvicorn recordhub.api.main:create_app --factory --port 8000
"""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from recordhub.api.routers import records, relations
from recordhub.core.errors import (
    BadRequestError,
    ErrorDetail,
    RecordHubError,
    ValidationError,
)
from recordhub.core.logging import get_logger
from recordhub.db.connection import get_engine
from recordhub.db.store import RecordStore
from recordhub.governance.policy import AppConfig, build_config
from recordhub.records.families import FAMILIES
from recordhub.records.service import RecordService

logger = get_logger(__name__)


# ── Error rendering ─────────────────────────────────────


def _render(exc: RecordHubError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def handle_record_error(request: Request, exc: RecordHubError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _render(exc)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return _render(BadRequestError("Request body is not valid JSON.", "MALFORMED-REQUEST-BODY"))
    details = [
        ErrorDetail(
            "VALIDATION-FAILED",
            str(e.get("msg", "")),
            {"location": [str(part) for part in e.get("loc", ())]},
        )
        for e in errors
    ]
    return _render(ValidationError("The request is not valid.", "VALIDATION-FAILED", details))


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    err = RecordHubError(str(exc.detail), "HTTP-ERROR")
    err.status_code = exc.status_code
    err.name = "NotFoundError" if exc.status_code == 404 else "HttpError"
    return _render(err)


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _render(RecordHubError("Internal server error.", "INTERNAL-SERVER-ERROR"))


# ── Application ─────────────────────────────────────────


def create_app(config: AppConfig | None = None, store: RecordStore | None = None) -> FastAPI:
    """Build the API around one immutable ``AppConfig`` and one store.

    Both default to the process environment / configured database.
    """
    config = config or build_config()
    store = store or RecordStore(get_engine())

    app = FastAPI(
        title="RecordHub",
        version="0.1.0",
        description="Multi-tenant record store with filter, set and access-controlled queries",
    )
    app.state.service = RecordService(store, config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RecordHubError, handle_record_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(relations.router, tags=["Relations"])
    for family in FAMILIES.values():
        app.include_router(
            records.build_router(family), prefix=f"/{family.segment}", tags=[family.display]
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    logger.info(
        "RecordHub app ready  families=%s access_control=%s",
        ",".join(FAMILIES), config.access_control,
    )
    return app
