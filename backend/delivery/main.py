"""
ASGI application for the delivery backend.

The lifespan builds the collaborators every request shares and stores them
on app.state: the order store session factory, the change feed, the
evidence blob store, the location publisher registry and the routing
client. Delivery errors are translated to HTTP here, and only their user
message ever reaches a client.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from delivery.api.v1 import (
    deliveries_router,
    notifications_router,
    orders_router,
    tracking_router,
)
from delivery.core.config import get_settings
from delivery.core.exceptions import (
    AlreadyTaken,
    CodeMismatch,
    DeliveryError,
    ErrorKind,
    EvidenceRequired,
    NotAuthorized,
    OrderNotFound,
)
from delivery.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from delivery.database.connection import (
    check_database_health,
    close_database_connections,
    get_session_factory,
    initialize_database,
)
from delivery.services.routing.client import RoutingClient
from delivery.services.storage.blob_store import create_blob_store
from delivery.services.tracking.events import create_event_bus
from delivery.services.tracking.publisher import PublisherRegistry
from delivery.services.tracking.repository import SQLLocationStore

configure_logging()
logger = get_logger(__name__)
settings = get_settings()


def error_status_code(exc: DeliveryError) -> int:
    if isinstance(exc, OrderNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, NotAuthorized):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, (CodeMismatch, EvidenceRequired)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, AlreadyTaken) or exc.kind == ErrorKind.PRECONDITION:
        return status.HTTP_409_CONFLICT
    if exc.kind == ErrorKind.TRANSPORT:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Delivery backend starting", environment=settings.environment, version=settings.app_version)

    with log_performance(logger, "startup"):
        await initialize_database()
        session_factory = get_session_factory()
        event_bus = create_event_bus()

        app.state.session_factory = session_factory
        app.state.event_bus = event_bus
        app.state.blob_store = create_blob_store()
        app.state.publishers = PublisherRegistry(SQLLocationStore(session_factory), event_bus)
        app.state.routing = RoutingClient()

    yield

    # Publishers flush their last sample through the feed and the store,
    # so they stop before either closes.
    with log_performance(logger, "shutdown"):
        await app.state.publishers.stop_all()
        await app.state.routing.close()
        await app.state.event_bus.close()
        await close_database_connections()
    logger.info("Delivery backend stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Delivery order lifecycle and live tracking API",
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
async def correlate_requests(request: Request, call_next):
    """
    Tag every log line of a request with its X-Request-ID.

    The id is taken from the incoming header or generated, and echoed back
    on the response.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    try:
        with log_performance(logger, "http_request", method=request.method, path=request.url.path):
            response = await call_next(request)
    except Exception as e:
        logger.error(
            "Unhandled error while serving request",
            method=request.method,
            path=request.url.path,
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()

    response.headers["X-Request-ID"] = request_id
    logger.info(
        "HTTP request served",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        request_id=request_id,
    )
    return response


@app.exception_handler(DeliveryError)
async def delivery_exception_handler(request: Request, exc: DeliveryError) -> JSONResponse:
    status_code = error_status_code(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Delivery operation rejected",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        error_kind=exc.kind.value,
        status_code=status_code,
        context=exc.context,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.user_message,
            "error": type(exc).__name__,
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = jsonable_errors(exc)
    logger.info("Invalid request body", path=request.url.path, errors=details)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Request validation failed",
            "error": "ValidationError",
            "details": details,
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Readiness probe")
async def readiness_check():
    """Ready only while the order store answers a ping."""
    if not await check_database_health(max_retries=1, retry_delay=0):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "service": settings.app_name, "database": "unhealthy"},
        )
    return {"status": "ready", "service": settings.app_name, "database": "healthy"}


for router in (orders_router, deliveries_router, tracking_router, notifications_router):
    app.include_router(router, prefix=settings.api_v1_prefix)
