"""
AuthScan Orchestrator - Health Router
Health check endpoint for monitoring.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from authscan.config import describe_engine

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health(request: Request):
    """Basic health check endpoint."""
    service = getattr(request.app.state, "auth_scan_service", None)
    status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_scans": len(service.registry.active_scans) if service else 0,
        "engine": describe_engine(),
    }
    if service is None:
        status["status"] = "starting"
        return status
    try:
        await service.db.list_scans(None, limit=1)
        status["db"] = "ok"
    except Exception as e:
        status["db"] = f"error: {e}"
        status["status"] = "degraded"
    return status
