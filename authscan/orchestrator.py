"""
AuthScan Orchestrator - Phase Sequencer
Background task that drives one authenticated scan:

    configuring -> authenticating -> spidering -> ajax_spider -> passive_scan
    -> active_scan -> processing -> saving -> completed

Any phase error ends in a single failure handler (status=failed). An explicit
stop ends the run quietly (status=stopped is written by the stop handler).
Context and cookie-rule cleanup is attempted on every exit path.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from authscan.alerts import AlertReport, build_alert_report
from authscan.blob_store import BlobStore
from authscan.config import ScanSettings, log_scan_event
from authscan.context import AuthContext, AuthContextConfigurator
from authscan.database import Database, ScanSession, utc_now
from authscan.errors import AuthScanError, ScanCancelled
from authscan.phases import (
    AjaxSpiderPhase, ActiveScanPhase, PassiveScanPhase, PolledPhase, ScanPhase,
    SpiderPhase, run_phase,
)
from authscan.progress import ProgressReporter
from authscan.retry import with_retry
from authscan.state import CancellationToken
from authscan.zap_client import ZapClient

logger = logging.getLogger("AuthScan")


def unexpected_error_message(phase_label: str) -> str:
    return f"{phase_label} failed: unexpected error"


class AuthScanOrchestrator:
    """Runs the authenticated scan workflow for one session record."""

    def __init__(
        self,
        client: ZapClient,
        db: Database,
        blob_store: BlobStore,
        settings: ScanSettings,
        sleep=None,
    ):
        self.client = client
        self.db = db
        self.blob_store = blob_store
        self.settings = settings
        # Injected sleep replaces poll waits and retry backoff (tests)
        self._sleep = sleep
        self.configurator = AuthContextConfigurator(client, settings, sleep=sleep)

    def _retry_kwargs(self, base_delay: float) -> dict:
        kwargs = {"max_attempts": self.settings.retry_max_attempts, "base_delay": base_delay}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return kwargs

    async def run(self, scan: ScanSession, cookies: List[Any], token: CancellationToken):
        """Run every phase; never raises except asyncio.CancelledError."""
        scan_id = scan.id
        reporter = ProgressReporter(self.db, scan_id, token)
        context: Optional[AuthContext] = None
        logger.info(f"[{scan_id}] Starting authenticated scan of {scan.target_url}")

        try:
            # Phase 1: auth context + cookie rule
            await reporter.enter(ScanPhase.CONFIGURING, "Configuring authentication...")
            context = await self.configurator.create_context(scan.target_url, scan_id)
            await self.configurator.inject_cookies(context, cookies)

            # Phase 2: seed the engine's session with authenticated requests
            token.check()
            await reporter.enter(ScanPhase.AUTHENTICATING, "Accessing target with authentication...")
            await self._prime_session(scan)

            # Phase 3: traditional spider
            spider = self._phase(SpiderPhase, scan, context)
            await reporter.enter(ScanPhase.SPIDERING, "Crawling authenticated pages...")
            await self._run(spider, reporter, token)
            urls_found = spider.urls_found

            # Phase 4: AJAX spider
            ajax = self._phase(AjaxSpiderPhase, scan, context)
            await reporter.enter(ScanPhase.AJAX_SPIDER, "Crawling JavaScript-rendered pages...",
                                 urls_found=urls_found)
            await self._run(ajax, reporter, token)
            urls_found = await self._refresh_urls(scan, urls_found)
            await reporter.report(ScanPhase.AJAX_SPIDER, ScanPhase.AJAX_SPIDER.end_pct,
                                  f"Crawl finished: {urls_found} URLs found", urls_found=urls_found)

            # Phase 5: passive scan queue drain
            await reporter.enter(ScanPhase.PASSIVE_SCAN, "Running passive analysis...")
            await self._run(self._phase(PassiveScanPhase, scan, context), reporter, token)

            # Phase 6: active scan
            active = self._phase(ActiveScanPhase, scan, context)
            await reporter.enter(ScanPhase.ACTIVE_SCAN, "Testing for vulnerabilities...")
            await self._run(active, reporter, token)

            # Phase 7: collect and aggregate findings
            token.check()
            await reporter.enter(ScanPhase.PROCESSING, "Collecting vulnerability data...")
            raw_alerts = await self._fetch_alerts(scan.target_url)
            logger.info(f"[{scan_id}] Retrieved {len(raw_alerts)} raw alerts")
            html_report = await self._fetch_html_report(scan_id)
            report = build_alert_report(
                raw_alerts,
                description_chars=self.settings.summary_description_chars,
                solution_chars=self.settings.summary_solution_chars,
                sample_urls=self.settings.summary_sample_urls,
            )

            # Phase 8: archive reports
            token.check()
            await reporter.enter(ScanPhase.SAVING, "Saving reports...")
            report_files = await self._save_reports(scan, report, html_report)

            # Phase 9: final record
            await reporter.finish(
                "Authenticated scan completed",
                urls_found=urls_found,
                alerts_found=len(raw_alerts),
                alerts=list(report.summary),
                risk_counts=report.risk_counts,
                total_alerts=report.total_alerts,
                total_occurrences=report.total_occurrences,
                report_files=report_files,
            )
            rc = report.risk_counts
            logger.info(
                f"[{scan_id}] Scan complete: {urls_found} URLs, {report.total_alerts} alert types "
                f"(High={rc['High']}, Medium={rc['Medium']}, Low={rc['Low']}, Info={rc['Informational']})"
            )
            log_scan_event("scan_completed", scan_id, scan.owner_id,
                           total_alerts=report.total_alerts, urls_found=urls_found)

        except ScanCancelled:
            logger.info(f"[{scan_id}] Scan stopped during {reporter.current.name}")
        except asyncio.CancelledError:
            logger.warning(f"[{scan_id}] Scan task cancelled during {reporter.current.name}")
            await self._fail(scan, reporter.current, AuthScanError("Scan interrupted by server shutdown"))
            raise
        except Exception as e:
            await self._fail(scan, reporter.current, e)
        finally:
            await self._cleanup(scan_id, context)

    # ==================== Phase helpers ====================

    def _phase(self, cls, scan: ScanSession, context: AuthContext) -> PolledPhase:
        return cls(self.client, self.settings, scan.id, scan.target_url, context, retry_sleep=self._sleep)

    async def _run(self, phase: PolledPhase, reporter: ProgressReporter, token: CancellationToken) -> str:
        try:
            return await run_phase(phase, reporter, token, sleep=self._sleep)
        finally:
            await self.db.append_warnings(phase.scan_id, phase.warnings)

    async def _prime_session(self, scan: ScanSession):
        urls = [scan.target_url]
        if scan.login_url and scan.login_url != scan.target_url:
            urls.append(scan.login_url)
        for url in urls:
            try:
                await with_retry(
                    lambda: self.client.access_url(url), "Access URL",
                    **self._retry_kwargs(self.settings.retry_scan_start_delay)
                )
            except Exception as e:
                # The spider reaches the target anyway
                logger.warning(f"[{scan.id}] Could not access {url}: {e}")

    async def _refresh_urls(self, scan: ScanSession, fallback: int) -> int:
        try:
            urls = await self.client.urls(scan.target_url)
        except Exception as e:
            logger.warning(f"[{scan.id}] Could not refresh URL list: {e}")
            return fallback
        return max(len(urls), fallback)

    async def _fetch_alerts(self, target_url: str) -> List[Dict[str, Any]]:
        """Page through the engine's alerts until a short page comes back."""
        page_size = max(1, self.settings.alerts_fetch_count)
        alerts: List[Dict[str, Any]] = []
        while True:
            start = len(alerts)
            page = await with_retry(
                lambda: self.client.alerts(target_url, start, page_size),
                "Fetch alerts", **self._retry_kwargs(self.settings.retry_base_delay)
            )
            alerts.extend(page)
            if len(page) < page_size:
                return alerts

    async def _fetch_html_report(self, scan_id: str) -> Optional[bytes]:
        try:
            return await with_retry(
                self.client.html_report, "Generate HTML report",
                **self._retry_kwargs(self.settings.retry_base_delay)
            )
        except Exception as e:
            logger.warning(f"[{scan_id}] HTML report unavailable: {e}")
            await self.db.append_warnings(scan_id, ["HTML report could not be generated"])
            return None

    async def _save_reports(self, scan: ScanSession, report: AlertReport, html_report: Optional[bytes]) -> List[dict]:
        files = []
        if html_report is not None:
            ref = await self.blob_store.upload_file(
                html_report,
                f"zap_auth_report_{scan.id}.html",
                {"scan_id": scan.id, "content_type": "text/html", "format": "html"},
            )
            files.append(ref.to_dict())

        detailed = json.dumps({
            "scanId": scan.id,
            "targetUrl": scan.target_url,
            "loginUrl": scan.login_url,
            "generatedAt": utc_now(),
            "riskCounts": report.risk_counts,
            "totalAlerts": report.total_alerts,
            "totalOccurrences": report.total_occurrences,
            "alerts": list(report.detailed),
        }, indent=2).encode("utf-8")
        ref = await self.blob_store.upload_file(
            detailed,
            f"zap_auth_detailed_alerts_{scan.id}.json",
            {
                "scan_id": scan.id,
                "content_type": "application/json",
                "format": "json",
                "description": "Full alert details with all affected URLs",
            },
        )
        files.append(ref.to_dict())
        return files

    # ==================== Failure / cleanup ====================

    async def _fail(self, scan: ScanSession, phase, error: BaseException):
        """Single failure handler: plain message on the record, details in the log."""
        if isinstance(error, AuthScanError):
            message = str(error)
        else:
            message = unexpected_error_message(phase.label)
        logger.error(f"[{scan.id}] Scan failed during {phase.name}: {error!r}", exc_info=error)
        try:
            written = await self.db.mark_terminal(scan.id, "failed", phase="failed",
                                                  error=message, message=message)
        except Exception as e:
            logger.error(f"[{scan.id}] Failed to record failure status: {e}")
            return
        if written:
            log_scan_event("scan_failed", scan.id, scan.owner_id, phase=phase.name, error=message)

    async def _cleanup(self, scan_id: str, context: Optional[AuthContext]):
        warnings = await self.configurator.remove(context, scan_id)
        if warnings:
            try:
                await self.db.append_warnings(scan_id, warnings)
            except Exception as e:
                logger.error(f"[{scan_id}] Could not record cleanup warnings: {e}")
        logger.info(f"[{scan_id}] Cleanup finished")
