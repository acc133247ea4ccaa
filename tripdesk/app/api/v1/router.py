"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from tripdesk.app.api.v1.endpoints import trip_schedules, trip_execution

router = APIRouter()

# Scheduler / admin endpoints
router.include_router(trip_schedules.router)

# Driver trip execution endpoints
router.include_router(trip_execution.router)
