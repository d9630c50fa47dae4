"""Health checks"""
from fastapi import APIRouter
from sqlalchemy import text

from locker.config.redis import get_redis
from locker.db.tenant import system_session

health_router = APIRouter()


@health_router.get("/")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "locker-calendar-sync"}


@health_router.get("/detailed")
def detailed_health_check():
    """Health check with database and Redis probes"""
    checks = {
        "api": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "overall": "unknown"
    }

    try:
        with system_session() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    try:
        get_redis().ping()
        checks["redis"] = "healthy"
    except Exception as e:
        checks["redis"] = f"unhealthy: {str(e)}"

    if all(status == "healthy" for key, status in checks.items() if key != "overall"):
        checks["overall"] = "healthy"
    else:
        checks["overall"] = "degraded"

    return checks
