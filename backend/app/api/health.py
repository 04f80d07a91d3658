############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# health.py: Health check and Prometheus metrics endpoints
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from backend.app.api.auth import get_services
from backend.app.logging_config import get_logger
from backend.app.services.container import AppServices

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    """
    Readiness probe - checks if the application is ready to serve traffic.

    Checks:
    - Database connectivity
    """
    checks = {"database": False}

    try:
        async with services.session_factory() as db:
            await db.execute(text("SELECT 1"))
            checks["database"] = True
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))

    all_ready = all(checks.values())

    return {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "sessions": sum(
            services.registry.session_count(u) for u in services.registry.user_ids()
        ),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
async def prometheus_metrics(services: AppServices = Depends(get_services)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format, or 404 when metrics are disabled.
    """
    if not services.settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
