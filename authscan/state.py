"""
AuthScan Orchestrator - Application State
In-process registry of running scan tasks and their cancellation tokens.
The persisted scan record stays the source of truth across processes.
"""
import asyncio
from typing import Dict, Optional, Set

from authscan.errors import ScanCancelled


class CancellationToken:
    """Cancellation flag for one scan, checked at every poll iteration."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self):
        """Raise ScanCancelled once the token has been tripped."""
        if self._event.is_set():
            raise ScanCancelled(self.reason or "stopped")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if woken early by cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


class ScanRegistry:
    """Running scans in this process: scan_id -> token and task."""

    def __init__(self):
        self.tokens: Dict[str, CancellationToken] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    def reserve(self, scan_id: str) -> Optional[CancellationToken]:
        """Claim a scan id. Returns None if a scan with this id is already active here."""
        if self.is_active(scan_id):
            return None
        token = CancellationToken()
        self.tokens[scan_id] = token
        # Drop the finished task of an earlier run so its callback leaves this one alone
        self.tasks.pop(scan_id, None)
        return token

    def attach(self, scan_id: str, task: asyncio.Task):
        self.tasks[scan_id] = task
        task.add_done_callback(lambda _t: self.discard(scan_id, task))

    def is_active(self, scan_id: str) -> bool:
        if scan_id not in self.tokens:
            return False
        task = self.tasks.get(scan_id)
        return task is None or not task.done()

    def cancel(self, scan_id: str, reason: str = "stopped") -> bool:
        """Trip the scan's token. Returns True if the scan was running here."""
        token = self.tokens.get(scan_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def discard(self, scan_id: str, task: Optional[asyncio.Task] = None):
        # A finished task must not evict a newer run of the same scan id
        if task is not None and self.tasks.get(scan_id) is not task:
            return
        self.tokens.pop(scan_id, None)
        self.tasks.pop(scan_id, None)

    @property
    def active_scans(self) -> Set[str]:
        return {scan_id for scan_id in self.tokens if self.is_active(scan_id)}
