"""
AuthScan Orchestrator - Authenticated Scan Router
Session handle registration, scan start/status/stop, history and report downloads.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from authscan.config import SCAN_START_RATE_LIMIT, SESSION_HANDLE_TTL_HOURS
from authscan.dependencies import get_handle_store, get_service, require_owner
from authscan.errors import EngineUnavailable, ScanNotFound, SessionHandleError
from authscan.limiter import limiter
from authscan.models import (
    AuthScanRequest, AuthScanStartResponse, ScanSnapshot, ScanStopResponse,
    SessionRegisterRequest, SessionRegisterResponse,
)
from authscan.services.auth_scan import AuthScanService
from authscan.session_store import Cookie, CookieHandleStore

logger = logging.getLogger("AuthScan")

router = APIRouter(prefix="/api/zap-auth", tags=["Authenticated Scans"])


@router.get("/health")
async def engine_health(service: AuthScanService = Depends(get_service)):
    """Is the ZAP daemon reachable?"""
    try:
        info = await service.check_engine()
    except EngineUnavailable as e:
        return JSONResponse(status_code=503, content={"available": False, "error": str(e)})
    return info


@router.post("/sessions", response_model=SessionRegisterResponse)
async def register_session(
    body: SessionRegisterRequest,
    owner_id: str = Depends(require_owner),
    store: CookieHandleStore = Depends(get_handle_store),
):
    """Park captured cookies behind a one-time handle."""
    cookies = [Cookie.from_dict(c.model_dump()) for c in body.cookies]
    handle = await store.issue(cookies, body.loginUrl)
    return SessionRegisterResponse(tempSessionId=handle, expiresInHours=SESSION_HANDLE_TTL_HOURS)


@router.post("/scan", response_model=AuthScanStartResponse)
@limiter.limit(SCAN_START_RATE_LIMIT)
async def start_auth_scan(
    request: Request,
    body: AuthScanRequest,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    """Start an authenticated scan; returns as soon as the record exists."""
    try:
        result = await service.start_with_handle(
            body.tempSessionId, body.targetUrl, scan_id=body.scanId, owner_id=owner_id
        )
    except SessionHandleError as e:
        raise HTTPException(status_code=400, detail={"error": str(e), "code": "SESSION_EXPIRED"})
    except EngineUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ScanNotFound:
        raise HTTPException(status_code=404, detail="Scan not found or access denied")
    return result


@router.get("/status/{scan_id}", response_model=ScanSnapshot)
async def get_auth_scan_status(
    scan_id: str,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    try:
        return await service.status(scan_id, owner_id)
    except ScanNotFound:
        raise HTTPException(status_code=404, detail="Scan not found or access denied")


@router.post("/stop/{scan_id}", response_model=ScanStopResponse)
async def stop_auth_scan(
    scan_id: str,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    try:
        return await service.stop(scan_id, owner_id)
    except ScanNotFound:
        raise HTTPException(status_code=404, detail="Scan not found or access denied")


@router.get("/scans")
async def list_auth_scans(
    limit: int = 50,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    """Latest authenticated scans of the caller."""
    limit = max(1, min(limit, 50))
    scans = await service.list_scans(owner_id, limit=limit)
    return {"scans": scans, "count": len(scans)}


async def _download(service: AuthScanService, scan_id: str, owner_id: str, kind: str) -> Response:
    try:
        file = await service.get_report_file(scan_id, owner_id, kind)
    except ScanNotFound:
        raise HTTPException(status_code=404, detail="Scan not found or access denied")
    if file is None:
        raise HTTPException(status_code=404, detail="Report not available for this scan")
    return Response(
        content=file["data"],
        media_type=file.get("content_type") or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{file["filename"]}"'},
    )


@router.get("/detailed-report/{scan_id}")
async def download_detailed_report(
    scan_id: str,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    """Full alert details with all affected URLs (JSON)."""
    return await _download(service, scan_id, owner_id, "json")


@router.get("/report/{scan_id}")
async def download_html_report(
    scan_id: str,
    owner_id: str = Depends(require_owner),
    service: AuthScanService = Depends(get_service),
):
    """ZAP HTML report."""
    return await _download(service, scan_id, owner_id, "html")
