"""
FastAPI Application Entry Point.

This is the main application file for the Tripdesk scheduling backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from tripdesk.app.core.config import settings
from tripdesk.app.core.observability import ObservabilityMiddleware, configure_logging
from tripdesk.app.core.redis_client import close_redis
from tripdesk.app.api.v1.router import router as api_v1_router
from tripdesk.app.db.session import engine, Base
from tripdesk.app.services.notification_service import drain_notifications
from tripdesk.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from tripdesk.app.models.user import User
from tripdesk.app.models.fleet_vehicle import FleetVehicle
from tripdesk.app.models.trip_purpose import TripPurpose
from tripdesk.app.models.trip_schedule import TripSchedule, ScheduleDestination
from tripdesk.app.models.trip_request import TripRequest
from tripdesk.app.models.notification_settings import UserNotificationSettings
from tripdesk.app.models.audit_log import AuditLog


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. On shutdown, waits for in-flight notifications and closes Redis.
    """
    configure_logging()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_notifications()
    await close_redis()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Trip scheduling and driver/vehicle availability service",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
