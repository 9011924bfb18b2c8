"""
Shared fixtures: an in-memory ZAP stand-in, a temp SQLite database and blob store.
"""
import asyncio
from typing import Any, Dict, List

import pytest

from authscan.blob_store import BlobStore
from authscan.config import ScanSettings
from authscan.database import Database
from authscan.errors import ZapApiError
from authscan.session_store import Cookie, CookieHandleStore


async def no_sleep(_seconds):
    return None


def sample_alerts() -> List[Dict[str, Any]]:
    """Raw records shaped like ZAP's core/view/alerts output (one per instance)."""
    return [
        {"alert": "SQL Injection", "risk": "High", "confidence": "Medium",
         "description": "SQL injection may be possible.", "solution": "Use prepared statements.",
         "url": "https://app.example.com/items?id=1", "method": "GET", "param": "id",
         "attack": "1' OR '1'='1", "evidence": "", "cweid": "89", "wascid": "19"},
        {"alert": "SQL Injection", "risk": "High", "confidence": "Medium",
         "description": "SQL injection may be possible.", "solution": "Use prepared statements.",
         "url": "https://app.example.com/search?q=x", "method": "GET", "param": "q",
         "attack": "x' AND 1=1", "evidence": "", "cweid": "89", "wascid": "19"},
        {"alert": "Cookie Without Secure Flag", "risk": "Low", "confidence": "Medium",
         "description": "A cookie has been set without the secure flag.", "solution": "Set the secure flag.",
         "url": "https://app.example.com/", "method": "GET", "param": "sid",
         "attack": "", "evidence": "Set-Cookie: sid", "cweid": "614", "wascid": "13"},
    ]


class FakeZapClient:
    """
    Scriptable stand-in for ZapClient.

    failures: method name -> list of exceptions (None = succeed) consumed per call
    hooks:    method name -> async callable(call_index) run before the call returns
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, list] = {}
        self.hooks: Dict[str, Any] = {}
        self.counters: Dict[str, int] = {}
        self.version_value = "2.14.0"
        self.spider_progress = [40, 100]
        self.spider_urls = ["https://app.example.com/", "https://app.example.com/items"]
        self.ajax_statuses = ["running", "stopped"]
        self.records = [5, 0]
        self.ascan_progress = [30, 70, 100]
        self.alert_count = 3
        self.alerts_data = sample_alerts()
        self.site_urls = ["https://app.example.com/", "https://app.example.com/items",
                          "https://app.example.com/search"]
        self.contexts: Dict[str, str] = {}
        self.rules: Dict[str, Dict[str, str]] = {}
        self.activate_rules = True
        self.closed = False

    async def _record(self, name: str, *args) -> int:
        self.calls.append((name,) + args)
        index = self.counters.get(name, 0)
        self.counters[name] = index + 1
        hook = self.hooks.get(name)
        if hook is not None:
            await hook(index)
        pending = self.failures.get(name)
        if pending:
            exc = pending.pop(0)
            if exc is not None:
                raise exc
        return index

    @staticmethod
    def _seq(values, index):
        return values[min(index, len(values) - 1)]

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def close(self):
        self.closed = True

    # core
    async def version(self):
        await self._record("version")
        return self.version_value

    async def access_url(self, url):
        await self._record("access_url", url)
        return {"Result": "OK"}

    async def urls(self, base_url):
        await self._record("urls", base_url)
        return list(self.site_urls)

    async def alerts(self, base_url, start=0, count=10000):
        await self._record("alerts", base_url, start, count)
        return list(self.alerts_data[start:start + count])

    async def number_of_alerts(self, base_url):
        await self._record("number_of_alerts", base_url)
        return self.alert_count

    async def html_report(self):
        await self._record("html_report")
        return b"<html><body>ZAP report</body></html>"

    # context
    async def new_context(self, context_name):
        await self._record("new_context", context_name)
        context_id = str(len(self.contexts) + 1)
        self.contexts[context_name] = context_id
        return context_id

    async def include_in_context(self, context_name, regex):
        await self._record("include_in_context", context_name, regex)
        return {"Result": "OK"}

    async def exclude_from_context(self, context_name, regex):
        await self._record("exclude_from_context", context_name, regex)
        return {"Result": "OK"}

    async def set_context_in_scope(self, context_name, in_scope=True):
        await self._record("set_context_in_scope", context_name)
        return {"Result": "OK"}

    async def remove_context(self, context_name):
        await self._record("remove_context", context_name)
        if context_name not in self.contexts:
            raise ZapApiError("Context does not exist", code="does_not_exist", status=400)
        del self.contexts[context_name]
        return {"Result": "OK"}

    # replacer
    async def replacer_rules(self):
        await self._record("replacer_rules")
        return list(self.rules.values())

    async def add_replacer_rule(self, description, match_type, match_string, replacement):
        await self._record("add_replacer_rule", description, match_type, match_string, replacement)
        self.rules[description] = {
            "description": description,
            "enabled": "true" if self.activate_rules else "false",
            "matchType": match_type,
            "matchString": match_string,
            "replacement": replacement,
        }
        return {"Result": "OK"}

    async def remove_replacer_rule(self, description):
        await self._record("remove_replacer_rule", description)
        if description not in self.rules:
            raise ZapApiError("Rule does not exist", code="does_not_exist", status=400)
        del self.rules[description]
        return {"Result": "OK"}

    # spider
    async def spider_set_option(self, option, value):
        await self._record("spider_set_option", option, value)

    async def spider_scan(self, url, context_name):
        await self._record("spider_scan", url, context_name)
        return "1"

    async def spider_status(self, scan_id):
        index = await self._record("spider_status", scan_id)
        return self._seq(self.spider_progress, index)

    async def spider_results(self, scan_id):
        await self._record("spider_results", scan_id)
        return list(self.spider_urls)

    async def spider_stop(self, scan_id):
        await self._record("spider_stop", scan_id)

    async def spider_stop_all(self):
        await self._record("spider_stop_all")

    # ajax spider
    async def ajax_set_option(self, option, value):
        await self._record("ajax_set_option", option, value)

    async def ajax_scan(self, url, context_name):
        await self._record("ajax_scan", url, context_name)
        return {"Result": "OK"}

    async def ajax_status(self):
        index = await self._record("ajax_status")
        return self._seq(self.ajax_statuses, index)

    async def ajax_stop(self):
        await self._record("ajax_stop")

    # passive scan
    async def records_to_scan(self):
        index = await self._record("records_to_scan")
        return self._seq(self.records, index)

    # active scan
    async def ascan_set_option(self, option, value):
        await self._record("ascan_set_option", option, value)

    async def ascan_scan(self, url, context_id):
        await self._record("ascan_scan", url, context_id)
        return "7"

    async def ascan_status(self, scan_id):
        index = await self._record("ascan_status", scan_id)
        return self._seq(self.ascan_progress, index)

    async def ascan_stop(self, scan_id):
        await self._record("ascan_stop", scan_id)

    async def ascan_stop_all(self):
        await self._record("ascan_stop_all")


class RecordingDatabase(Database):
    """Database that logs every scan write and whether it landed."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.writes: List[tuple] = []

    async def update_scan(self, scan_id, only_if_running=True, **fields):
        written = await super().update_scan(scan_id, only_if_running=only_if_running, **fields)
        self.writes.append((fields.get("status") or "running", fields.get("phase"), fields.get("progress"), written))
        return written


class FakeReporter:
    """Collects run_phase progress reports without touching a database."""

    def __init__(self):
        self.reports: List[tuple] = []

    async def report(self, phase, progress, message=None, **counts):
        self.reports.append((phase.name, progress, message, counts))


COOKIES = [
    Cookie(name="sid", value="abc123", domain="app.example.com", http_only=True, secure=True),
    Cookie(name="csrf", value="xyz", domain="app.example.com"),
]


@pytest.fixture
def cookies():
    return list(COOKIES)


@pytest.fixture
def zap():
    return FakeZapClient()


@pytest.fixture
def settings():
    return ScanSettings()


@pytest.fixture
def db(tmp_path):
    database = RecordingDatabase(tmp_path / "authscan.db")
    asyncio.run(database.init_db())
    return database


@pytest.fixture
def blob_store(db, tmp_path):
    return BlobStore(db, tmp_path / "reports")


@pytest.fixture
def handle_store(db):
    return CookieHandleStore(db)
