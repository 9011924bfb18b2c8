"""
AuthScan Orchestrator - Shared Dependencies
Caller identity and service lookup for the routers.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request

from authscan.services.auth_scan import AuthScanService
from authscan.session_store import CookieHandleStore


# =============================================================================
# Caller Identity
# =============================================================================
async def require_owner(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """
    Owner id of the caller. Set by an upstream auth middleware on
    request.state.user_id, or forwarded by a trusted gateway as X-User-Id.
    The header is ignored unless the app was built with trust_user_header.
    """
    owner_id = getattr(request.state, "user_id", None)
    if not owner_id and getattr(request.app.state, "trust_user_header", False):
        owner_id = x_user_id
    if not owner_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return str(owner_id)


# =============================================================================
# Services
# =============================================================================
def get_service(request: Request) -> AuthScanService:
    service = getattr(request.app.state, "auth_scan_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Scan service not initialized")
    return service


def get_handle_store(request: Request) -> CookieHandleStore:
    return get_service(request).handle_store
