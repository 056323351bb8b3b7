"""
Health check and readiness probe endpoints.
Provides liveness and readiness checks for Kubernetes and monitoring systems.
"""
import logging
from typing import Dict, Any
from fastapi import APIRouter, HTTPException, Request, status, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
from redis import Redis

from api.dependencies import get_db
from core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "CRM Chat Delivery API"
SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Args:
        db: Database session

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {str(e)}"}


def check_redis() -> Dict[str, Any]:
    """
    Check Redis connectivity (only meaningful when fan-out is enabled).

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        redis_client = Redis.from_url(settings.redis_url, socket_connect_timeout=2, socket_timeout=2)
        redis_client.ping()
        redis_client.close()
        return {"healthy": True, "message": "Redis connection OK"}
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return {"healthy": False, "message": f"Redis connection failed: {str(e)}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    """
    Liveness probe endpoint.

    Returns basic service status without checking dependencies, plus the
    socket registry size and the last gateway state seen by the monitor.
    """
    connection_manager = getattr(request.app.state, "connection_manager", None)
    monitor = getattr(request.app.state, "monitor", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "connections": connection_manager.get_connection_count() if connection_manager else 0,
        "whatsapp": monitor.last_status if monitor else None
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe endpoint.

    Checks the database and, when cross-process fan-out is enabled, Redis.
    Returns 200 only if every checked dependency is healthy, 503 otherwise.

    Example Response (degraded):
        {
            "status": "not_ready",
            "checks": {
                "database": {"healthy": true, "message": "Database connection OK"},
                "redis": {"healthy": false, "message": "Redis connection failed: Connection refused"}
            }
        }
    """
    checks = {"database": check_database(db)}
    if settings.redis_fanout_enabled:
        checks["redis"] = check_redis()

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    unhealthy_services = [service for service, check in checks.items() if not check["healthy"]]
    logger.warning(f"Readiness check failed for services: {', '.join(unhealthy_services)}")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
