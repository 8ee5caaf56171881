"""
FastAPI application: booking, provider and admin routes plus health and metrics.
"""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.middleware.error_handler import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from src.api.routes import admin_revenue, bookings
from src.lib.logging import get_logger, set_correlation_id
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation_id to all requests for distributed tracing.
    Accepts X-Correlation-ID from incoming requests or generates a new one.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id
        set_correlation_id(correlation_id)

        logger.info(
            "Incoming request",
            extra={"extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            }},
        )

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        logger.info(
            "Response sent",
            extra={"extra_fields": {
                "status_code": response.status_code,
            }},
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup/shutdown events.
    """
    logger.info(f"{settings.app_name} starting up...")
    scheduler = None
    if settings.enable_scheduler:
        from src.jobs.refund_reconciler import schedule_refund_reconciliation
        from src.jobs.scheduler import get_scheduler

        scheduler = get_scheduler()
        schedule_refund_reconciliation(scheduler)
        scheduler.start()
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info(f"{settings.app_name} shutting down...")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Booking lifecycle and payment reconciliation for clients, providers and admins",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)


# Register exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


# Include routers
app.include_router(bookings.router)
app.include_router(bookings.provider_router)
app.include_router(admin_revenue.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint():
    """
    Prometheus-compatible metrics endpoint.

    Metrics exposed:
    - booking_transitions_total: Applied commands by command and status change
    - booking_commands_rejected_total: Rejected commands by error code
    - payment_gateway_calls_total: Gateway calls by operation and outcome
    - notifications_sent_total: Notification deliveries by audience, event, outcome
    """
    metrics = get_metrics_collector()
    return PlainTextResponse(
        content=metrics.export_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
