"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from notifier import __version__
from notifier.api.routes import dispatcher_router, notifications_router
from notifier.api.schemas import HealthResponse
from notifier.dispatcher.core import get_dispatcher
from notifier.exceptions import (
    InvalidTransitionError,
    NotificationNotFoundError,
    NotificationValidationError,
    RetryBudgetExhausted,
    StoreUnavailable,
)
from notifier.models import get_db, init_db
from notifier.models.database import check_database
from notifier.utils.config import get_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    init_db()
    dispatcher = None
    if get_config().dispatcher.autostart:
        dispatcher = get_dispatcher()
        await dispatcher.start()
    yield
    # Shutdown
    if dispatcher is not None:
        await dispatcher.close()


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP responses."""

    @app.exception_handler(NotificationValidationError)
    async def validation_error_handler(request: Request, exc: NotificationValidationError):
        return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": exc.errors})

    @app.exception_handler(NotificationNotFoundError)
    async def not_found_handler(request: Request, exc: NotificationNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(RetryBudgetExhausted)
    async def budget_exhausted_handler(request: Request, exc: RetryBudgetExhausted):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Request {request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Notification store unavailable"})


app = FastAPI(
    title="Notifier API",
    description="Multi-channel notification delivery with scheduled dispatch and bounded retries.",
    version=__version__,
    lifespan=lifespan,
)

register_exception_handlers(app)

# Include routers
app.include_router(notifications_router, prefix="/api")
app.include_router(dispatcher_router, prefix="/api")


@app.get("/health", response_model=HealthResponse, tags=["health"])
def health_check() -> HealthResponse:
    """Basic health check endpoint.

    Returns 200 OK if the service is running.
    Does not check dependencies.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        database="unknown",
    )


@app.get("/health/ready", response_model=HealthResponse, tags=["health"])
def readiness_check(db: Session = Depends(get_db)) -> HealthResponse:
    """Readiness check endpoint.

    Returns 200 if the database is reachable, 503 otherwise.
    """
    return HealthResponse(
        status="ready",
        version=__version__,
        database=check_database(db),
    )
