"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine.api.routes import billing_periods_router, charges_router, health_router
from billing_engine.calculators.proration import InvalidSpanError
from billing_engine.calculators.totals import InvalidTotalError
from billing_engine.config import get_settings
from billing_engine.database import create_schema, dispose_db, init_db
from billing_engine.errors import (
    BillingEngineError,
    ConcurrentModificationError,
    InvalidPeriodError,
    NotFoundError,
)
from billing_engine.services.charge_generation import SourceFailureError
from billing_engine.services.export_service import ExportFailureError
from billing_engine.services.ledger_service import ChargeLockedError, InvalidChargeError
from billing_engine.services.state_machine import InvalidTransitionError
from billing_engine.sources import MalformedActivityError

logger = logging.getLogger(__name__)

# (error type, HTTP status, code); first match wins
ERROR_STATUS: list[tuple[type[BillingEngineError], int, str]] = [
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidPeriodError, 422, "INVALID_PERIOD"),
    (InvalidChargeError, 422, "INVALID_CHARGE"),
    (InvalidSpanError, 422, "INVALID_SPAN"),
    (InvalidTotalError, 422, "INVALID_TOTAL"),
    (MalformedActivityError, 422, "MALFORMED_ACTIVITY"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (ChargeLockedError, 409, "CHARGE_LOCKED"),
    (ConcurrentModificationError, 409, "CONCURRENT_MODIFICATION"),
    (SourceFailureError, 502, "SOURCE_FAILURE"),
    (ExportFailureError, 502, "EXPORT_FAILURE"),
]


def error_status(exc: BillingEngineError) -> tuple[int, str]:
    """HTTP status and error code for a typed engine failure."""
    for error_type, http_status, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return http_status, code
    return status.HTTP_400_BAD_REQUEST, "BILLING_ERROR"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    engine, _ = init_db()
    await create_schema(engine)
    yield
    # Shutdown
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Billing Engine API",
        description="Billing period lifecycle, charge generation and payroll export",
        version=get_settings().engine_version,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(BillingEngineError)
    async def billing_error_handler(
        request: Request, exc: BillingEngineError
    ) -> JSONResponse:
        """Map typed engine failures onto HTTP status codes."""
        http_status, code = error_status(exc)
        if http_status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=http_status,
            content={"detail": str(exc), "code": code},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(billing_periods_router, prefix="/api/v1")
    app.include_router(charges_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
