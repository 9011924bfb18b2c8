"""
Tests for the phase table and the polled engine phases
"""
import asyncio

import pytest

from authscan.config import ScanSettings
from authscan.context import AuthContext
from authscan.errors import AuthScanError, ScanCancelled, ZapApiError
from authscan.phases import (
    ActiveScanPhase, AjaxSpiderPhase, PassiveScanPhase, ScanPhase, SpiderPhase,
    calculate_phase_progress, run_phase,
)
from authscan.state import CancellationToken
from tests.conftest import FakeReporter, no_sleep

TARGET = "https://app.example.com"
CONTEXT = AuthContext(context_id="1", context_name="auth_scan_s1")


def make_phase(cls, zap, settings):
    return cls(zap, settings, "s1", TARGET, CONTEXT, retry_sleep=no_sleep)


def drive(phase):
    reporter = FakeReporter()
    token = CancellationToken()

    async def scenario():
        return await run_phase(phase, reporter, token, sleep=no_sleep)

    return asyncio.run(scenario()), reporter


class TestPhaseTable:

    def test_phase_order_is_increasing(self):
        ordinals = [p.ordinal for p in ScanPhase.ORDER]
        starts = [p.start_pct for p in ScanPhase.ORDER]
        assert ordinals == sorted(ordinals)
        assert starts == sorted(starts)

    def test_progress_mapping(self):
        assert calculate_phase_progress(ScanPhase.SPIDERING, 0, 100) == 15
        assert calculate_phase_progress(ScanPhase.SPIDERING, 50, 100) == 22
        assert calculate_phase_progress(ScanPhase.SPIDERING, 100, 100) == 30
        assert calculate_phase_progress(ScanPhase.ACTIVE_SCAN, 100, 100) == 90
        assert calculate_phase_progress(ScanPhase.ACTIVE_SCAN, 150, 100) == 90

    def test_settings_validation(self):
        with pytest.raises(ValueError):
            ScanSettings(spider_poll_interval=0.5)
        with pytest.raises(ValueError):
            ScanSettings(ascan_stuck_threshold=0)
        assert ScanSettings().spider_max_polls == 2400
        assert ScanSettings().ascan_max_polls == 2160


class TestSpiderPhase:

    def test_progress_reports_until_done(self, zap, settings):
        zap.spider_progress = [0, 40, 100]
        phase = make_phase(SpiderPhase, zap, settings)
        outcome, reporter = drive(phase)

        assert outcome == "done"
        assert [r[1] for r in reporter.reports] == [15, 21, 30]
        assert reporter.reports[-1][3] == {"urls_found": 2}
        assert zap.called("spider_scan") == [("spider_scan", TARGET, "auth_scan_s1")]
        assert ("spider_set_option", "MaxDepth", 15) in zap.calls
        assert zap.called("spider_stop") == []

    def test_status_errors_keep_polling(self, zap, settings):
        # call indexes advance on failures too: error, 50%, 100%
        zap.spider_progress = [0, 50, 100]
        zap.failures["spider_status"] = [ConnectionResetError("reset")]
        phase = make_phase(SpiderPhase, zap, settings)
        outcome, _ = drive(phase)

        assert outcome == "done"
        assert len(zap.called("spider_status")) == 3

    def test_ceiling_stops_spider(self, zap):
        settings = ScanSettings(spider_max_duration_mins=1, spider_poll_interval=3)
        zap.spider_progress = [10]
        phase = make_phase(SpiderPhase, zap, settings)
        outcome, _ = drive(phase)

        assert outcome == "ceiling"
        assert len(zap.called("spider_status")) == 20
        assert zap.called("spider_stop") == [("spider_stop", "1")]
        assert phase.warnings

    def test_start_rejected_is_fatal(self, zap, settings):
        zap.failures["spider_scan"] = [ZapApiError("Bad url", code="url_not_found")]
        phase = make_phase(SpiderPhase, zap, settings)

        with pytest.raises(AuthScanError):
            drive(phase)

    def test_cancellation_stops_spider(self, zap, settings):
        zap.spider_progress = [10]
        token = CancellationToken()

        async def cancel_on_first_poll(index):
            token.cancel()

        zap.hooks["spider_status"] = cancel_on_first_poll
        phase = make_phase(SpiderPhase, zap, settings)

        async def scenario():
            await run_phase(phase, FakeReporter(), token, sleep=no_sleep)

        with pytest.raises(ScanCancelled):
            asyncio.run(scenario())
        assert len(zap.called("spider_status")) == 1
        assert zap.called("spider_stop") == [("spider_stop", "1")]


class TestAjaxSpiderPhase:

    def test_runs_until_stopped_and_always_stops(self, zap, settings):
        zap.ajax_statuses = ["running", "running", "stopped"]
        phase = make_phase(AjaxSpiderPhase, zap, settings)
        outcome, reporter = drive(phase)

        assert outcome == "done"
        assert [r[1] for r in reporter.reports] == [32, 32, 40]
        assert zap.called("ajax_stop") == [("ajax_stop",)]

    def test_start_failure_skips_phase(self, zap, settings):
        zap.failures["ajax_scan"] = [ZapApiError("No browser", code="internal_error")]
        phase = make_phase(AjaxSpiderPhase, zap, settings)
        outcome, reporter = drive(phase)

        assert outcome == "skipped"
        assert reporter.reports == []
        assert zap.called("ajax_status") == []
        assert zap.called("ajax_stop") == [("ajax_stop",)]
        assert len(phase.warnings) == 1


class TestPassiveScanPhase:

    def test_waits_for_queue_to_drain(self, zap, settings):
        zap.records = [12, 4, 0]
        outcome, _ = drive(make_phase(PassiveScanPhase, zap, settings))

        assert outcome == "done"
        assert len(zap.called("records_to_scan")) == 3

    def test_poll_error_ends_wait(self, zap, settings):
        zap.failures["records_to_scan"] = [ZapApiError("Internal error", code="internal_error")]
        outcome, _ = drive(make_phase(PassiveScanPhase, zap, settings))

        assert outcome == "error"
        assert len(zap.called("records_to_scan")) == 1


class TestActiveScanPhase:

    def test_scoped_to_context_id(self, zap, settings):
        outcome, reporter = drive(make_phase(ActiveScanPhase, zap, settings))

        assert outcome == "done"
        assert zap.called("ascan_scan") == [("ascan_scan", TARGET, "1")]
        assert [r[1] for r in reporter.reports] == [58, 76, 90]
        assert reporter.reports[-1][3] == {"alerts_found": 3}
        assert ("ascan_set_option", "ThreadPerHost", 7) in zap.calls

    def test_stuck_scan_is_stopped(self, zap):
        settings = ScanSettings(ascan_stuck_threshold=3)
        zap.ascan_progress = [10, 20, 20, 20, 20, 20]
        phase = make_phase(ActiveScanPhase, zap, settings)
        outcome, _ = drive(phase)

        assert outcome == "stalled"
        # one change to 20%, then three unchanged polls
        assert len(zap.called("ascan_status")) == 5
        assert zap.called("ascan_stop") == [("ascan_stop", "7")]
        assert len(phase.warnings) == 1
        assert "20%" in phase.warnings[0]

    def test_progress_changes_reset_stuck_counter(self, zap):
        settings = ScanSettings(ascan_stuck_threshold=3)
        zap.ascan_progress = [10, 10, 10, 11, 11, 11, 100]
        outcome, _ = drive(make_phase(ActiveScanPhase, zap, settings))

        assert outcome == "done"
        assert zap.called("ascan_stop") == []
