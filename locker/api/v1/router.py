"""
API v1 router setup
All routes are JWT authenticated and tenant scoped
"""
from fastapi import APIRouter

from locker.api.v1 import calendar

api_v1_router = APIRouter()

# ============================================================================
# CALENDAR ROUTES (JWT authentication required)
# ============================================================================
api_v1_router.include_router(
    calendar.router,
    prefix="/calendar",
    tags=["Calendar"]
)


# ============================================================================
# ROOT ENDPOINT - API Info
# ============================================================================
@api_v1_router.get("/", tags=["Info"])
async def api_info():
    """API information and available endpoints."""
    return {
        "version": "1.0",
        "authentication": {
            "calendar": "JWT Bearer token required (user login)",
            "webhooks": "Channel token carried in X-Goog-Channel-Token",
        }
    }
