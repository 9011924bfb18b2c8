"""
AuthScan Orchestrator - Scan Phases
Phase table, progress ranges, and the polled engine phases.

Every polled phase exposes the same contract:
    enter()        -> bool        start engine work; False skips the phase
    poll(i)        -> PollResult  one status check
    exit(outcome)                 stop engine work if needed; never raises
and is driven by run_phase(), which sleeps, checks the cancellation token,
polls, reports progress and applies the poll ceiling.
"""
import logging
from collections import namedtuple
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from authscan.config import ScanSettings
from authscan.context import AuthContext
from authscan.errors import AuthScanError, ScanCancelled, TransientNetworkError, ZapApiError
from authscan.retry import with_retry
from authscan.zap_client import ZapClient

logger = logging.getLogger("AuthScan")

# =============================================================================
# Phase Table
# =============================================================================
Phase = namedtuple("Phase", ["name", "ordinal", "start_pct", "end_pct", "label"])


class ScanPhase:
    """Defines all scan phases with their progress ranges."""
    QUEUED = Phase("queued", 0, 0, 0, "Queued")
    CONFIGURING = Phase("configuring", 1, 5, 5, "Configuring")
    AUTHENTICATING = Phase("authenticating", 2, 10, 10, "Authenticating")
    SPIDERING = Phase("spidering", 3, 15, 30, "Spidering")
    AJAX_SPIDER = Phase("ajax_spider", 4, 32, 40, "AJAX spider")
    PASSIVE_SCAN = Phase("passive_scan", 5, 42, 42, "Passive scan")
    ACTIVE_SCAN = Phase("active_scan", 6, 45, 90, "Active scan")
    PROCESSING = Phase("processing", 7, 92, 92, "Processing")
    SAVING = Phase("saving", 8, 95, 95, "Saving")
    COMPLETED = Phase("completed", 9, 100, 100, "Completed")

    ORDER = (QUEUED, CONFIGURING, AUTHENTICATING, SPIDERING, AJAX_SPIDER,
             PASSIVE_SCAN, ACTIVE_SCAN, PROCESSING, SAVING, COMPLETED)


def calculate_phase_progress(phase: Phase, current: float, total: float) -> int:
    """Calculate overall progress based on phase progress."""
    if total == 0:
        return phase.start_pct
    phase_progress = min(max(current / total, 0), 1)
    return int(phase.start_pct + (phase.end_pct - phase.start_pct) * phase_progress)


# =============================================================================
# Poll Results / Outcomes
# =============================================================================
class PollStatus(Enum):
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"


@dataclass
class PollResult:
    status: PollStatus
    progress: Optional[int] = None
    message: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    stalled: bool = False


OUTCOME_DONE = "done"
OUTCOME_CEILING = "ceiling"
OUTCOME_STALLED = "stalled"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_ERROR = "error"


class PolledPhase:
    """Base for engine phases that start work and then poll its status."""
    phase: Phase = ScanPhase.QUEUED
    # Give up waiting on the first failed poll instead of retrying next tick
    stop_on_error = False

    def __init__(self, client: ZapClient, settings: ScanSettings, scan_id: str, target_url: str,
                 context: Optional[AuthContext] = None, retry_sleep=None):
        self.client = client
        self.settings = settings
        self.scan_id = scan_id
        self.target_url = target_url
        self.context = context
        self.warnings: List[str] = []
        self._retry_sleep = retry_sleep

    @property
    def poll_interval(self) -> float:
        raise NotImplementedError

    @property
    def max_polls(self) -> int:
        raise NotImplementedError

    async def enter(self) -> bool:
        return True

    async def poll(self, iteration: int) -> PollResult:
        raise NotImplementedError

    async def exit(self, outcome: str):
        pass

    def warn(self, message: str):
        logger.warning(f"[{self.scan_id}] {message}")
        self.warnings.append(message)

    async def _set_options(self, setter, options):
        for option, value in options:
            try:
                await setter(option, value)
            except Exception as e:
                logger.warning(f"[{self.scan_id}] Failed to set {self.phase.label} option {option}: {e}")

    async def _start(self, call, operation: str):
        kwargs = {
            "max_attempts": self.settings.retry_max_attempts,
            "base_delay": self.settings.retry_scan_start_delay,
        }
        if self._retry_sleep is not None:
            kwargs["sleep"] = self._retry_sleep
        return await with_retry(call, operation, **kwargs)

    async def _best_effort(self, call, label: str):
        try:
            await call()
        except Exception as e:
            logger.warning(f"[{self.scan_id}] {label} failed: {e}")


async def run_phase(phase: PolledPhase, reporter, token, sleep=None) -> str:
    """
    Drive one polled phase to an outcome.

    Returns done, ceiling, stalled, skipped or error. Raises ScanCancelled
    (after exit("cancelled")) when the token trips or a progress write is rejected.
    """
    token.check()
    if not await phase.enter():
        await phase.exit(OUTCOME_SKIPPED)
        return OUTCOME_SKIPPED

    outcome = OUTCOME_CEILING
    try:
        for iteration in range(phase.max_polls):
            if sleep is not None:
                await sleep(phase.poll_interval)
            else:
                await token.sleep(phase.poll_interval)
            token.check()

            result = await phase.poll(iteration)
            if result.status is PollStatus.ERROR:
                logger.warning(f"[{phase.scan_id}] {phase.phase.label} status check failed: {result.message}")
                if phase.stop_on_error:
                    outcome = OUTCOME_ERROR
                    break
                continue

            if result.progress is not None:
                await reporter.report(phase.phase, result.progress, result.message, **result.counts)

            if result.status is PollStatus.DONE:
                outcome = OUTCOME_STALLED if result.stalled else OUTCOME_DONE
                break
        else:
            logger.warning(f"[{phase.scan_id}] {phase.phase.label} hit its poll ceiling ({phase.max_polls} polls)")
    except ScanCancelled:
        outcome = OUTCOME_CANCELLED
        raise
    finally:
        await phase.exit(outcome)
    return outcome


# =============================================================================
# Spider
# =============================================================================
class SpiderPhase(PolledPhase):
    phase = ScanPhase.SPIDERING

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.engine_scan_id: Optional[str] = None
        self.urls_found = 0

    @property
    def poll_interval(self) -> float:
        return self.settings.spider_poll_interval

    @property
    def max_polls(self) -> int:
        return self.settings.spider_max_polls

    async def enter(self) -> bool:
        s = self.settings
        await self._set_options(self.client.spider_set_option, [
            ("MaxDepth", s.spider_max_depth),
            ("MaxDuration", s.spider_max_duration_mins),
            ("MaxChildren", s.spider_max_children),
            ("ThreadCount", s.spider_thread_count),
        ])
        try:
            self.engine_scan_id = await self._start(
                lambda: self.client.spider_scan(self.target_url, self.context.context_name),
                "Start spider"
            )
        except ZapApiError as e:
            logger.error(f"[{self.scan_id}] Spider start rejected: {e}")
            raise AuthScanError("Failed to start spider scan") from e
        logger.info(f"[{self.scan_id}] Spider started (engine scan {self.engine_scan_id})")
        return True

    async def poll(self, iteration: int) -> PollResult:
        try:
            pct = await self.client.spider_status(self.engine_scan_id)
        except Exception as e:
            return PollResult(PollStatus.ERROR, message=str(e))

        try:
            self.urls_found = len(await self.client.spider_results(self.engine_scan_id))
        except Exception as e:
            logger.debug(f"[{self.scan_id}] Spider results unavailable: {e}")

        return PollResult(
            PollStatus.DONE if pct >= 100 else PollStatus.IN_PROGRESS,
            progress=calculate_phase_progress(self.phase, pct, 100),
            message=f"Crawling authenticated pages: {pct}% ({self.urls_found} URLs found)",
            counts={"urls_found": self.urls_found},
        )

    async def exit(self, outcome: str):
        if outcome == OUTCOME_CEILING:
            self.warn("Spider reached its time limit and was stopped")
        if outcome in (OUTCOME_CEILING, OUTCOME_CANCELLED) and self.engine_scan_id:
            await self._best_effort(lambda: self.client.spider_stop(self.engine_scan_id), "Spider stop")


# =============================================================================
# AJAX Spider
# =============================================================================
class AjaxSpiderPhase(PolledPhase):
    phase = ScanPhase.AJAX_SPIDER

    @property
    def poll_interval(self) -> float:
        return self.settings.ajax_poll_interval

    @property
    def max_polls(self) -> int:
        return self.settings.ajax_max_polls

    async def enter(self) -> bool:
        s = self.settings
        await self._set_options(self.client.ajax_set_option, [
            ("MaxDuration", s.ajax_max_duration_mins),
            ("MaxCrawlDepth", s.ajax_max_crawl_depth),
            ("NumberOfBrowsers", s.ajax_browsers),
        ])
        try:
            await self._start(
                lambda: self.client.ajax_scan(self.target_url, self.context.context_name),
                "Start AJAX spider"
            )
        except (ZapApiError, TransientNetworkError) as e:
            self.warn(f"AJAX spider could not be started and was skipped: {e}")
            return False
        logger.info(f"[{self.scan_id}] AJAX spider started")
        return True

    async def poll(self, iteration: int) -> PollResult:
        try:
            status = await self.client.ajax_status()
        except Exception as e:
            return PollResult(PollStatus.ERROR, message=str(e))

        if status == "stopped":
            return PollResult(PollStatus.DONE, progress=self.phase.end_pct,
                              message="JavaScript crawl finished")
        return PollResult(
            PollStatus.IN_PROGRESS,
            progress=calculate_phase_progress(self.phase, iteration + 1, self.max_polls),
            message="Crawling JavaScript-rendered pages...",
        )

    async def exit(self, outcome: str):
        # The AJAX spider keeps its browsers open until told to stop
        await self._best_effort(self.client.ajax_stop, "AJAX spider stop")


# =============================================================================
# Passive Scan
# =============================================================================
class PassiveScanPhase(PolledPhase):
    phase = ScanPhase.PASSIVE_SCAN
    stop_on_error = True

    @property
    def poll_interval(self) -> float:
        return self.settings.passive_poll_interval

    @property
    def max_polls(self) -> int:
        return self.settings.passive_max_polls

    async def poll(self, iteration: int) -> PollResult:
        try:
            remaining = await self.client.records_to_scan()
        except Exception as e:
            return PollResult(PollStatus.ERROR, message=str(e))

        if remaining <= 0:
            return PollResult(PollStatus.DONE, progress=self.phase.end_pct,
                              message="Passive analysis complete")
        return PollResult(
            PollStatus.IN_PROGRESS,
            progress=self.phase.start_pct,
            message=f"Passive analysis: {remaining} records remaining",
        )

    async def exit(self, outcome: str):
        if outcome == OUTCOME_CEILING:
            logger.info(f"[{self.scan_id}] Passive scan queue not drained, continuing")


# =============================================================================
# Active Scan
# =============================================================================
class ActiveScanPhase(PolledPhase):
    phase = ScanPhase.ACTIVE_SCAN

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.engine_scan_id: Optional[str] = None
        self.alerts_found = 0
        self.last_pct: Optional[int] = None
        self.stuck_count = 0

    @property
    def poll_interval(self) -> float:
        return self.settings.ascan_poll_interval

    @property
    def max_polls(self) -> int:
        return self.settings.ascan_max_polls

    async def enter(self) -> bool:
        s = self.settings
        await self._set_options(self.client.ascan_set_option, [
            ("MaxScanDurationInMins", s.ascan_max_duration_mins),
            ("MaxRuleDurationInMins", s.ascan_max_rule_duration_mins),
            ("ThreadPerHost", s.ascan_threads_per_host),
            ("DelayInMs", s.ascan_delay_ms),
        ])
        try:
            self.engine_scan_id = await self._start(
                lambda: self.client.ascan_scan(self.target_url, self.context.context_id),
                "Start active scan"
            )
        except ZapApiError as e:
            logger.error(f"[{self.scan_id}] Active scan start rejected: {e}")
            raise AuthScanError("Failed to start active scan") from e
        logger.info(f"[{self.scan_id}] Active scan started (engine scan {self.engine_scan_id})")
        return True

    async def poll(self, iteration: int) -> PollResult:
        try:
            pct = await self.client.ascan_status(self.engine_scan_id)
        except Exception as e:
            return PollResult(PollStatus.ERROR, message=str(e))

        try:
            self.alerts_found = await self.client.number_of_alerts(self.target_url)
        except Exception as e:
            logger.debug(f"[{self.scan_id}] Alert count unavailable: {e}")

        if pct == self.last_pct:
            self.stuck_count += 1
        else:
            self.stuck_count = 0
        self.last_pct = pct

        progress = calculate_phase_progress(self.phase, pct, 100)
        counts = {"alerts_found": self.alerts_found}

        if pct >= 100:
            return PollResult(PollStatus.DONE, progress=progress,
                              message="Vulnerability testing complete", counts=counts)
        if self.stuck_count >= self.settings.ascan_stuck_threshold:
            return PollResult(
                PollStatus.DONE, progress=progress, counts=counts, stalled=True,
                message=f"Active scan stalled at {pct}%, moving on to results",
            )
        return PollResult(PollStatus.IN_PROGRESS, progress=progress,
                          message=f"Testing for vulnerabilities: {pct}%", counts=counts)

    async def exit(self, outcome: str):
        if outcome == OUTCOME_STALLED:
            self.warn(
                f"Active scan made no progress for {self.stuck_count} polls at {self.last_pct}% "
                f"and was stopped; results may be incomplete"
            )
        elif outcome == OUTCOME_CEILING:
            self.warn("Active scan reached its time limit and was stopped")
        if outcome in (OUTCOME_STALLED, OUTCOME_CEILING, OUTCOME_CANCELLED) and self.engine_scan_id:
            await self._best_effort(lambda: self.client.ascan_stop(self.engine_scan_id), "Active scan stop")
