"""
AuthScan Orchestrator - Routers Package
FastAPI routers for modular API endpoints.
"""
from authscan.routers.health import router as health_router
from authscan.routers.auth_scans import router as auth_scans_router

__all__ = [
    'health_router',
    'auth_scans_router',
]


def include_routers(app):
    """Include all routers in the FastAPI app."""
    app.include_router(health_router)
    app.include_router(auth_scans_router)
