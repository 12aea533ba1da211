"""
FastAPI application entry point.

Wires the order router, request correlation middleware, error handlers and
health endpoints, and opens/closes the database and Redis connections in the
application lifespan.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vehicle_registry.api.v1.orders import OrderAPIError
from vehicle_registry.api.v1.orders import router as orders_router
from vehicle_registry.cache.redis_client import close_redis_client, get_redis_client
from vehicle_registry.core.config import get_settings
from vehicle_registry.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from vehicle_registry.database.connection import (
    check_database_health,
    close_database_connections,
    initialize_database,
)
from vehicle_registry.services.orders.enums import ErrorCode

configure_logging()
logger = get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        await initialize_database()
        if settings.cache_enabled:
            await get_redis_client()

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await close_redis_client()
        await close_database_connections()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Vehicle registration order workflow API",
    lifespan=lifespan,
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Set the correlation ID, time the request and echo the ID back."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


@app.exception_handler(OrderAPIError)
async def order_error_handler(request: Request, exc: OrderAPIError) -> JSONResponse:
    log_method = logger.error if exc.code is ErrorCode.UNEXPECTED_ERROR else logger.info
    log_method(
        "Order request failed",
        method=request.method,
        path=request.url.path,
        error_code=exc.code.value,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
        headers={"X-Request-ID": get_request_id()},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=errors,
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": ErrorCode.VALIDATION_FAILED.value,
            "message": "Request validation failed",
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the failure and return a body that exposes no internal detail."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": ErrorCode.UNEXPECTED_ERROR.value,
            "message": "An unexpected error occurred",
            "errors": [],
            "request_id": get_request_id(),
        },
    )


@app.get("/health", tags=["Health"], summary="Liveness check")
async def health_check() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Readiness check")
async def readiness_check():
    """Report whether the database and, if enabled, Redis are reachable."""
    database_ready = await check_database_health(max_retries=1)
    cache_ready = True
    cache_stats = None
    if settings.cache_enabled:
        try:
            redis = await get_redis_client()
            cache_ready = await redis.health_check()
            cache_stats = redis.get_cache_stats()
        except Exception as e:
            logger.warning("Redis readiness check failed", error=str(e))
            cache_ready = False

    ready = database_ready and cache_ready
    body = {
        "status": "ready" if ready else "not_ready",
        "service": settings.app_name,
        "database": "healthy" if database_ready else "unhealthy",
        "cache": (
            "disabled"
            if not settings.cache_enabled
            else "healthy" if cache_ready else "unhealthy"
        ),
    }
    if cache_stats is not None:
        body["cache_stats"] = cache_stats
    if not ready:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


app.include_router(orders_router, prefix=settings.api_v1_prefix)
