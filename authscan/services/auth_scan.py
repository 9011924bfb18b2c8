"""
AuthScan Orchestrator - Authenticated Scan Service
Start / status / stop contract used by the HTTP layer.
"""
import asyncio
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from authscan.blob_store import BlobStore
from authscan.cancellation import stop_scan
from authscan.config import SCAN_STALE_TIMEOUT_HOURS, ScanSettings, log_scan_event
from authscan.database import Database, ScanSession
from authscan.errors import EngineUnavailable, ScanNotFound, SessionHandleError, ZapApiError
from authscan.orchestrator import AuthScanOrchestrator
from authscan.session_store import CookieHandleStore
from authscan.state import ScanRegistry
from authscan.zap_client import ZapClient

logger = logging.getLogger("AuthScanService")

STALE_SCAN_MESSAGE = "Scan timed out (exceeded 24 hour limit)"


def new_scan_id() -> str:
    return f"zap-auth-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class AuthScanService:
    """Owns the registry of running scans and launches orchestrator tasks."""

    def __init__(
        self,
        db: Database,
        client: ZapClient,
        blob_store: BlobStore,
        handle_store: CookieHandleStore,
        settings: ScanSettings,
        registry: Optional[ScanRegistry] = None,
        stale_timeout_hours: float = SCAN_STALE_TIMEOUT_HOURS,
        sleep=None,
    ):
        self.db = db
        self.client = client
        self.blob_store = blob_store
        self.handle_store = handle_store
        self.settings = settings
        self.registry = registry or ScanRegistry()
        self.stale_timeout = timedelta(hours=stale_timeout_hours)
        self._sleep = sleep

    # ==================== Engine ====================

    async def check_engine(self) -> Dict[str, Any]:
        """Raise EngineUnavailable unless the engine answers its version view."""
        try:
            version = await self.client.version()
        except (aiohttp.ClientError, asyncio.TimeoutError, ZapApiError, OSError) as e:
            logger.warning(f"ZAP health check failed: {e}")
            raise EngineUnavailable() from e
        return {"available": True, "version": version}

    # ==================== Start ====================

    def _already_running(self, scan_id: str) -> Dict[str, str]:
        logger.info(f"[{scan_id}] Scan already running")
        return {
            "scanId": scan_id,
            "status": "already_running",
            "message": "An authenticated scan is already in progress for this ID",
        }

    async def _existing_conflict(self, scan_id: str, owner_id: Optional[str]) -> Optional[Dict[str, str]]:
        if self.registry.is_active(scan_id):
            return self._already_running(scan_id)
        existing = await self.db.get_scan(scan_id)
        if existing is None:
            return None
        if existing.owner_id != owner_id:
            raise ScanNotFound(scan_id)
        if existing.is_running:
            return self._already_running(scan_id)
        return None

    async def start_with_handle(
        self,
        temp_session_id: str,
        target_url: str,
        scan_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Start from a one-time session handle. A duplicate start leaves the handle
        unused, and a start that fails hands it back so the client can retry.
        """
        scan_id = scan_id or new_scan_id()
        conflict = await self._existing_conflict(scan_id, owner_id)
        if conflict:
            return conflict
        handle = await self.handle_store.consume(temp_session_id)
        try:
            result = await self.start(target_url, handle.login_url, handle.cookies, scan_id, owner_id)
        except Exception:
            await self.handle_store.restore(temp_session_id, handle)
            raise
        if result.get("status") != "started":
            await self.handle_store.restore(temp_session_id, handle)
        return result

    async def start(
        self,
        target_url: str,
        login_url: Optional[str],
        cookies: List[Any],
        scan_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Dict[str, str]:
        scan_id = scan_id or new_scan_id()
        if not cookies:
            raise SessionHandleError("No session cookies found. Please test login again.")

        conflict = await self._existing_conflict(scan_id, owner_id)
        if conflict:
            return conflict

        token = self.registry.reserve(scan_id)
        if token is None:
            return self._already_running(scan_id)

        try:
            await self.check_engine()
            created = await self.db.create_or_reset_scan(scan_id, target_url, login_url, owner_id)
        except BaseException:
            self.registry.discard(scan_id)
            raise
        if not created:
            # Another process won the race for this id
            self.registry.discard(scan_id)
            return self._already_running(scan_id)

        scan = await self.db.get_scan(scan_id)
        orchestrator = AuthScanOrchestrator(
            self.client, self.db, self.blob_store, self.settings, sleep=self._sleep
        )
        task = asyncio.create_task(self._run_background(orchestrator, scan, cookies, token))
        self.registry.attach(scan_id, task)

        logger.info(f"[{scan_id}] Authenticated scan started for {target_url}")
        log_scan_event("scan_started", scan_id, owner_id, target=target_url)
        return {
            "scanId": scan_id,
            "status": "started",
            "message": "Authenticated scan started successfully",
        }

    async def _run_background(self, orchestrator: AuthScanOrchestrator, scan: ScanSession, cookies, token):
        try:
            await orchestrator.run(scan, cookies, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{scan.id}] Background scan error: {e}", exc_info=True)

    # ==================== Status / history ====================

    async def _owned_scan(self, scan_id: str, owner_id: Optional[str]) -> ScanSession:
        scan = await self.db.get_scan(scan_id)
        if scan is None or scan.owner_id != owner_id:
            raise ScanNotFound(scan_id)
        return scan

    async def _expire_if_stale(self, scan: ScanSession) -> ScanSession:
        started = _parse_ts(scan.started_at)
        if not scan.is_running or started is None:
            return scan
        if datetime.now(timezone.utc) - started <= self.stale_timeout:
            return scan
        logger.warning(f"[{scan.id}] Running for more than {self.stale_timeout}, marking as failed")
        self.registry.cancel(scan.id, "timeout")
        await self.db.mark_terminal(scan.id, "failed", phase="failed",
                                    error=STALE_SCAN_MESSAGE, message=STALE_SCAN_MESSAGE)
        log_scan_event("scan_timed_out", scan.id, scan.owner_id)
        return await self.db.get_scan(scan.id)

    async def status(self, scan_id: str, owner_id: Optional[str]) -> Dict[str, Any]:
        scan = await self._owned_scan(scan_id, owner_id)
        scan = await self._expire_if_stale(scan)
        return scan.to_snapshot()

    async def list_scans(self, owner_id: Optional[str], limit: int = 50) -> List[Dict[str, Any]]:
        scans = await self.db.list_scans(owner_id, limit=limit)
        history = []
        for scan in scans:
            snapshot = scan.to_snapshot()
            # History rows stay light; full alert summaries come from /status
            snapshot.pop("alerts", None)
            history.append(snapshot)
        return history

    # ==================== Stop ====================

    async def stop(self, scan_id: str, owner_id: Optional[str]) -> Dict[str, Any]:
        return await stop_scan(scan_id, owner_id, self.db, self.client, self.registry)

    # ==================== Reports ====================

    async def get_report_file(self, scan_id: str, owner_id: Optional[str], kind: str) -> Optional[Dict[str, Any]]:
        """Return the stored html or json report (metadata plus `data`), or None."""
        scan = await self._owned_scan(scan_id, owner_id)
        for ref in scan.report_files:
            if ref.get("format") == kind:
                return await self.blob_store.get_file(ref["fileId"])
        return None

    # ==================== Shutdown ====================

    async def shutdown(self, grace_seconds: float = 30):
        """Wait for running scans, then cancel whatever is left."""
        tasks = list(self.registry.tasks.values())
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} active scans to finish...")
        done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} scans still running at shutdown")
