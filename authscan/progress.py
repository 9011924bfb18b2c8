"""
AuthScan Orchestrator - Progress Reporter
Writes phase/progress/message/counters onto the scan record for polling clients.
"""
import logging
from typing import Optional

from authscan.database import Database
from authscan.errors import ScanCancelled
from authscan.phases import Phase, ScanPhase
from authscan.state import CancellationToken

logger = logging.getLogger("Progress")


class ProgressReporter:
    """
    Forward-only progress writer for one scan.

    Every write is conditional on the record still being `running`. A rejected
    write means the scan was stopped or failed elsewhere, so the token is
    tripped and ScanCancelled is raised to unwind the sequencer.
    """

    def __init__(self, db: Database, scan_id: str, token: CancellationToken):
        self.db = db
        self.scan_id = scan_id
        self.token = token
        self.current: Phase = ScanPhase.QUEUED
        self.progress = 0

    def _advance(self, phase: Phase):
        if phase.ordinal < self.current.ordinal:
            raise ValueError(f"Phase regression: {self.current.name} -> {phase.name}")
        if phase.ordinal > self.current.ordinal:
            self.current = phase

    async def enter(self, phase: Phase, message: str, **counts):
        """Move to `phase` at its starting percentage."""
        self._advance(phase)
        logger.info(f"[{self.scan_id}] Phase {phase.ordinal}: {phase.label}")
        await self._write(phase, phase.start_pct, message, counts)

    async def report(self, phase: Phase, progress: int, message: Optional[str] = None, **counts):
        """Progress within `phase`, clamped to the phase's range."""
        self._advance(phase)
        progress = min(max(progress, phase.start_pct), phase.end_pct)
        await self._write(phase, progress, message, counts)

    async def finish(self, message: str, **fields):
        """Final completed write; conditional like every other write."""
        self._advance(ScanPhase.COMPLETED)
        written = await self.db.mark_terminal(
            self.scan_id, "completed", phase=ScanPhase.COMPLETED.name,
            message=message, progress=100, **fields
        )
        self._check_written(written)
        self.progress = 100

    async def _write(self, phase: Phase, progress: int, message: Optional[str], counts):
        # Progress never goes backwards, even when a poll reports a lower value
        progress = max(progress, self.progress)
        written = await self.db.update_scan(
            self.scan_id,
            only_if_running=True,
            phase=phase.name,
            progress=progress,
            message=message,
            urls_found=counts.get("urls_found"),
            alerts_found=counts.get("alerts_found"),
        )
        self._check_written(written)
        self.progress = progress

    def _check_written(self, written: bool):
        if not written:
            logger.info(f"[{self.scan_id}] Record is no longer running, unwinding")
            self.token.cancel("terminal")
            raise ScanCancelled("terminal")
