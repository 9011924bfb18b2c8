"""
AuthScan Orchestrator - Cancellation Handler
Stops a running authenticated scan on behalf of its owner.
"""
import logging
from typing import Any, Dict, List, Optional

from authscan.config import log_scan_event
from authscan.context import COOKIE_RULE_NAME
from authscan.database import Database
from authscan.errors import ScanNotFound, ZapApiError
from authscan.state import ScanRegistry
from authscan.zap_client import ZapClient

logger = logging.getLogger("Cancellation")


async def _halt_engine(client: ZapClient, scan_id: str) -> List[str]:
    """Stop every engine activity the scan may have started; returns warnings."""
    warnings = []
    steps = [
        ("stop active scans", client.ascan_stop_all),
        ("stop spider", client.spider_stop_all),
        ("stop AJAX spider", client.ajax_stop),
        ("remove cookie rule", lambda: client.remove_replacer_rule(COOKIE_RULE_NAME)),
    ]
    for label, call in steps:
        try:
            await call()
        except ZapApiError as e:
            if e.does_not_exist:
                continue
            logger.warning(f"[{scan_id}] Stop: failed to {label}: {e}")
            warnings.append(f"Stop: failed to {label}")
        except Exception as e:
            logger.warning(f"[{scan_id}] Stop: failed to {label}: {e}")
            warnings.append(f"Stop: failed to {label}")
    return warnings


async def stop_scan(
    scan_id: str,
    owner_id: Optional[str],
    db: Database,
    client: ZapClient,
    registry: ScanRegistry,
) -> Dict[str, Any]:
    """
    Stop a scan the caller owns.

    A scan that is not running is acknowledged without touching the engine.
    Otherwise the in-process token is tripped, the record is moved to stopped
    and the engine is told to halt. The sequencer notices at its next poll (or
    on its next rejected progress write) and removes the auth context.
    """
    scan = await db.get_scan(scan_id)
    if scan is None or scan.owner_id != owner_id:
        raise ScanNotFound(scan_id)

    if not scan.is_running:
        return {"success": True, "scanId": scan_id, "status": scan.status,
                "message": f"Scan is not running (status: {scan.status})"}

    registry.cancel(scan_id, "stopped")
    written = await db.mark_terminal(scan_id, "stopped", phase="stopped",
                                     message="Authenticated scan stopped by user")
    if not written:
        # Finished (or failed) between the read and the write
        scan = await db.get_scan(scan_id)
        return {"success": True, "scanId": scan_id, "status": scan.status,
                "message": f"Scan is not running (status: {scan.status})"}

    logger.info(f"[{scan_id}] Stop requested by owner {owner_id}")
    warnings = await _halt_engine(client, scan_id)
    if warnings:
        await db.append_warnings(scan_id, warnings)
    log_scan_event("scan_stopped", scan_id, owner_id, warnings=len(warnings))
    return {"success": True, "scanId": scan_id, "status": "stopped",
            "message": "Authenticated scan stopped"}
