"""Main FastAPI application with error handlers and Prometheus metrics"""

import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from mlstudio import __version__
from mlstudio.api.endpoints import router
from mlstudio.api.models import ErrorResponse
from mlstudio.exceptions import (
    AutoMLConfigurationError,
    ComputeNotFoundError,
    ComputeProvisioningError,
    ConfigurationError,
    DatasetNotFoundError,
    DatasetRegistrationError,
    MLStudioException,
    ModelNotFoundError,
    ModelRegistrationError,
    PipelineNotFoundError,
    PipelineRunError,
    PipelineValidationError,
    RunNotFoundError,
    RunStateError,
    SweepConfigurationError,
    ValidationError,
    WorkspaceNotFoundError,
)
from mlstudio.logging_config import get_logger, log_context, setup_logging

# Prometheus metrics
REQUEST_COUNT = Counter(
    'mlstudio_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

REQUEST_DURATION = Histogram(
    'mlstudio_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

ERROR_COUNT = Counter(
    'mlstudio_errors_total',
    'Total errors',
    ['error_type']
)

NOT_FOUND_ERRORS = (
    WorkspaceNotFoundError,
    DatasetNotFoundError,
    ComputeNotFoundError,
    RunNotFoundError,
    ModelNotFoundError,
    PipelineNotFoundError,
)

BAD_REQUEST_ERRORS = (
    ValidationError,
    ConfigurationError,
    DatasetRegistrationError,
    ComputeProvisioningError,
    ModelRegistrationError,
    SweepConfigurationError,
    AutoMLConfigurationError,
    PipelineValidationError,
)

CONFLICT_ERRORS = (RunStateError, PipelineRunError)

# Setup logging
setup_logging()
logger = get_logger(__name__)

# Create main application
app = FastAPI(
    title="mlstudio API",
    description="Read and submit API for an mlstudio workspace",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)


def status_code_for(exc: MLStudioException) -> int:
    """HTTP status for a library error"""
    if isinstance(exc, NOT_FOUND_ERRORS):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, BAD_REQUEST_ERRORS):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, CONFLICT_ERRORS):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    """Count and time requests; log lines inside carry the request id."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()
    with log_context(request_id=request_id, method=request.method, path=request.url.path):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    route = request.scope.get("route")
    endpoint = route.path if route is not None else request.url.path
    REQUEST_COUNT.labels(request.method, endpoint, response.status_code).inc()
    REQUEST_DURATION.labels(request.method, endpoint).observe(time.perf_counter() - started)
    return response


# Exception handlers
@app.exception_handler(MLStudioException)
async def mlstudio_exception_handler(request: Request, exc: MLStudioException) -> JSONResponse:
    """
    Map library errors to JSON responses.

    Args:
        request: Request that caused the error
        exc: Raised error

    Returns:
        JSON response with the error type, message and details
    """
    status_code = status_code_for(exc)
    ERROR_COUNT.labels(type(exc).__name__).inc()

    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, exc_info=True)
    else:
        logger.warning("Request rejected", path=request.url.path, error=exc.message)

    error_response = ErrorResponse(
        error=type(exc).__name__,
        message=exc.message,
        details=exc.details
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]
    logger.warning("Validation error", path=request.url.path, errors=errors)

    error_response = ErrorResponse(
        error="ValidationError",
        message="Request validation failed",
        details={"validation_errors": errors}
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_response.model_dump())


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all unhandled exceptions."""
    ERROR_COUNT.labels(type(exc).__name__).inc()
    logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)

    error_response = ErrorResponse(
        error="InternalServerError",
        message="An unexpected error occurred",
        details={}
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_response.model_dump())


app.include_router(router)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "service": "mlstudio API",
        "version": __version__
    }


# Prometheus metrics endpoint
@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/", tags=["Root"])
async def root():
    return {
        "service": "mlstudio API",
        "version": __version__,
        "documentation": "/docs"
    }
