"""
FastAPI application factory.

Run with: uvicorn caseai.main:create_app --factory
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from caseai.container import ServiceContainer, build_container
from caseai.core.config import Settings, load_settings
from caseai.core.errors import (
    CaseAIError,
    GenerationFailedError,
    JudgeParseError,
    ModelError,
    NotFoundError,
    PersistenceError,
    ResponseFormatError,
    TemplateError,
    ValidationError,
)
from caseai.core.logging import configure_logging, get_logger, get_request_id, get_trace_id
from caseai.core.middleware import TraceIDMiddleware
from caseai.models.entities import utcnow
from caseai.routes import ai, evaluation, health, metrics

logger = get_logger(__name__)

# Checked in order; the first matching class wins.
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ModelError, 503),
    (GenerationFailedError, 503),
    (JudgeParseError, 502),
    (ResponseFormatError, 502),
    (TemplateError, 500),
    (PersistenceError, 500),
)


def status_for(exc: CaseAIError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def error_response(request: Request, status_code: int, code: str, message: str, details=None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or get_request_id()
    response = JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {
                "error": {"code": code, "message": message, "details": details or {}},
                "timestamp": utcnow().isoformat(),
                "requestId": request_id,
            }
        ),
    )
    trace_id = get_trace_id()
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


async def caseai_error_handler(request: Request, exc: CaseAIError):
    """Map service-layer errors to the JSON error envelope."""
    status_code = status_for(exc)
    details = dict(exc.context)
    if isinstance(exc, ValidationError) and exc.errors:
        details["errors"] = exc.errors

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "caseai_error",
        status_code=status_code,
        code=exc.code,
        error=exc.message,
        path=request.url.path,
        method=request.method,
    )
    # 5xx storage and template failures are internal; their details stay in the log.
    if isinstance(exc, (PersistenceError, TemplateError)):
        details = {}
    return error_response(request, status_code, exc.code, exc.message, details)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]} for err in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, method=request.method, errors=errors)
    return error_response(request, 400, ValidationError.code, "Invalid request", {"errors": errors})


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return error_response(request, exc.status_code, "http_error", str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return error_response(request, 500, CaseAIError.code, "Internal server error")


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the API.

    Args:
        settings: Defaults to load_settings()
        container: Prebuilt services; when given, the app does not build or close its own
        transport: httpx transport for the model clients of a container the app builds
    """
    if settings is None:
        settings = container.settings if container is not None else load_settings()
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_startup_started")
        owned = container is None
        app.state.container = container if container is not None else await build_container(settings, transport=transport)
        logger.info("app_startup_completed")
        try:
            yield
        finally:
            logger.info("app_shutdown_started")
            if owned:
                await app.state.container.close()
            logger.info("app_shutdown_completed")

    app = FastAPI(
        title="Case AI API",
        description="AI orchestration and evaluation for case management",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS for local dev; restrict in production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TraceIDMiddleware)

    app.add_exception_handler(CaseAIError, caseai_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
    app.include_router(ai.router, prefix="/api/ai", tags=["AI"])
    app.include_router(evaluation.router, prefix="/api/evaluation", tags=["Evaluation"])
    return app
