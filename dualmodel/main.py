import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from dualmodel.api.rate_limit import client_key, limiter
from dualmodel.api.routes import debug, health, stream, verification
from dualmodel.dependencies import get_services
from dualmodel.errors import PipelineError
from dualmodel.logging import configure_logging
from dualmodel.models.contracts import ErrorResponse

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire services at startup so a misconfiguration fails fast; close their clients on shutdown."""
    services = get_services()
    yield
    await services.aclose()


app = FastAPI(
    title="Dual-Model Verification API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
    lifespan=lifespan,
)
app.state.limiter = limiter


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", request.headers.get("X-Request-ID", ""))


def _error_response(request: Request, status_code: int, body: ErrorResponse) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
    response.headers["X-Request-ID"] = _request_id(request)
    return response


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a request ID to every request for log correlation.

    Bound into structlog context vars and echoed in the X-Request-ID response
    header. When a pipeline request body carries no request_id, this ID is
    used for the run, so clients can subscribe to its stream up front.
    """
    run_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = run_id
    with structlog.contextvars.bound_contextvars(request_id=run_id, path=request.url.path):
        response = await call_next(request)
    response.headers["X-Request-ID"] = run_id
    return response


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map the pipeline error taxonomy onto ErrorResponse + HTTP status."""
    logger.warning(
        "pipeline_error_response",
        path=request.url.path,
        error=exc.error_code,
        stage=exc.stage.value if exc.stage else None,
        elapsed_ms=exc.elapsed_ms,
    )
    return _error_response(
        request,
        exc.status_code,
        ErrorResponse(
            error=exc.error_code,
            message=exc.message,
            retryable=exc.retryable,
            detail=exc.detail(),
        ),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = exc.limit.limit.get_expiry() if exc.limit is not None else 60
    logger.warning("rate_limit_exceeded", path=request.url.path, client=client_key(request), limit=exc.detail)
    response = _error_response(
        request,
        429,
        ErrorResponse(
            error="rate_limit_exceeded",
            message=f"Rate limit exceeded: at most {exc.detail} per client. Please try again later.",
            retryable=True,
        ),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return ErrorResponse JSON for malformed request bodies (FastAPI's default is {"detail": [...]})."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return _error_response(
        request,
        422,
        ErrorResponse(error="validation_error", message="; ".join(messages), retryable=False),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(
        request,
        500,
        ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            retryable=True,
        ),
    )


app.include_router(health.router, prefix="/api/v1")
app.include_router(verification.router, prefix="/api/v1")
app.include_router(stream.router, prefix="/api/v1")
app.include_router(debug.router, prefix="/api/v1")
