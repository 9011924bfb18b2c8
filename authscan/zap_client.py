"""
AuthScan Orchestrator - ZAP Control-Plane Client
Thin async wrapper over the ZAP JSON API (GET /JSON/<component>/<view|action>/<name>/).
"""
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from authscan.errors import ZapApiError

logger = logging.getLogger("ZapClient")


class ZapClient:
    """
    Async client for one ZAP daemon.

    Transport errors (aiohttp.ClientError, asyncio.TimeoutError) are left to
    propagate so the retry wrapper can classify them. Engine error payloads and
    non-2xx responses raise ZapApiError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120,
        host_header: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        max_connections: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.host_header = host_header
        self._session = session
        self._owns_session = session is None
        self._max_connections = max_connections

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-ZAP-API-Key"] = self.api_key
        if self.host_header:
            headers["Host"] = self.host_header
        return headers

    def _params(self, params: Optional[Dict[str, Any]]) -> Dict[str, str]:
        out = {k: str(v) for k, v in (params or {}).items() if v is not None}
        if self.api_key:
            out["apikey"] = self.api_key
        return out

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self._max_connections)
            self._session = aiohttp.ClientSession(connector=connector, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(self, path: str, params: Optional[Dict[str, Any]]) -> aiohttp.ClientResponse:
        session = await self._get_session()
        url = f"{self.base_url}/{path}/"
        logger.debug(f"ZAP GET {path}")
        return await session.get(url, params=self._params(params), headers=self._headers())

    async def call(
        self, component: str, kind: str, method: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Call a JSON view or action and return the decoded payload."""
        resp = await self._request(f"JSON/{component}/{kind}/{method}", params)
        async with resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            if resp.status >= 400 or not isinstance(data, dict):
                code = data.get("code") if isinstance(data, dict) else None
                message = data.get("message") if isinstance(data, dict) else None
                raise ZapApiError(
                    f"{component}/{kind}/{method} returned HTTP {resp.status}: {message or 'invalid response'}",
                    code=code,
                    status=resp.status,
                )
            return data

    async def other(self, component: str, method: str, params: Optional[Dict[str, Any]] = None) -> bytes:
        """Call an OTHER endpoint (raw, non-JSON output such as reports)."""
        resp = await self._request(f"OTHER/{component}/other/{method}", params)
        async with resp:
            body = await resp.read()
            if resp.status >= 400:
                raise ZapApiError(f"{component}/other/{method} returned HTTP {resp.status}", status=resp.status)
            return body

    async def view(self, component: str, method: str, **params) -> Dict[str, Any]:
        return await self.call(component, "view", method, params)

    async def action(self, component: str, method: str, **params) -> Dict[str, Any]:
        return await self.call(component, "action", method, params)

    # ==================== Core ====================

    async def version(self) -> str:
        data = await self.view("core", "version")
        return data.get("version", "")

    async def access_url(self, url: str):
        return await self.action("core", "accessUrl", url=url, followRedirects="true")

    async def urls(self, base_url: str) -> List[str]:
        data = await self.view("core", "urls", baseurl=base_url)
        return list(data.get("urls", []))

    async def alerts(self, base_url: str, start: int = 0, count: int = 10000) -> List[Dict[str, Any]]:
        data = await self.view("core", "alerts", baseurl=base_url, start=start, count=count)
        return list(data.get("alerts", []))

    async def number_of_alerts(self, base_url: str) -> int:
        data = await self.view("core", "numberOfAlerts", baseurl=base_url)
        return int(data.get("numberOfAlerts", 0))

    async def html_report(self) -> bytes:
        return await self.other("core", "htmlreport")

    # ==================== Context ====================

    async def new_context(self, context_name: str) -> str:
        data = await self.action("context", "newContext", contextName=context_name)
        return str(data.get("contextId", ""))

    async def include_in_context(self, context_name: str, regex: str):
        return await self.action("context", "includeInContext", contextName=context_name, regex=regex)

    async def exclude_from_context(self, context_name: str, regex: str):
        return await self.action("context", "excludeFromContext", contextName=context_name, regex=regex)

    async def set_context_in_scope(self, context_name: str, in_scope: bool = True):
        return await self.action(
            "context", "setContextInScope",
            contextName=context_name, booleanInScope=str(in_scope).lower(),
        )

    async def remove_context(self, context_name: str):
        return await self.action("context", "removeContext", contextName=context_name)

    # ==================== Replacer ====================

    async def replacer_rules(self) -> List[Dict[str, Any]]:
        data = await self.view("replacer", "rules")
        return list(data.get("rules", []))

    async def add_replacer_rule(self, description: str, match_type: str, match_string: str, replacement: str):
        return await self.action(
            "replacer", "addRule",
            description=description,
            enabled="true",
            matchType=match_type,
            matchRegex="false",
            matchString=match_string,
            replacement=replacement,
            initiators="",
        )

    async def remove_replacer_rule(self, description: str):
        return await self.action("replacer", "removeRule", description=description)

    # ==================== Spider ====================

    async def spider_set_option(self, option: str, value: Any):
        return await self.action("spider", f"setOption{option}", Integer=value)

    async def spider_scan(self, url: str, context_name: str) -> str:
        data = await self.action(
            "spider", "scan", url=url, contextName=context_name, recurse="true", subtreeOnly="false"
        )
        return str(data.get("scan", ""))

    async def spider_status(self, scan_id: str) -> int:
        data = await self.view("spider", "status", scanId=scan_id)
        return int(data.get("status", 0))

    async def spider_results(self, scan_id: str) -> List[str]:
        data = await self.view("spider", "results", scanId=scan_id)
        return list(data.get("results", []))

    async def spider_stop(self, scan_id: str):
        return await self.action("spider", "stop", scanId=scan_id)

    async def spider_stop_all(self):
        return await self.action("spider", "stopAllScans")

    # ==================== AJAX Spider ====================

    async def ajax_set_option(self, option: str, value: Any):
        return await self.action("ajaxSpider", f"setOption{option}", Integer=value)

    async def ajax_scan(self, url: str, context_name: str):
        return await self.action(
            "ajaxSpider", "scan", url=url, inScope="true", contextName=context_name, subtreeOnly="false"
        )

    async def ajax_status(self) -> str:
        data = await self.view("ajaxSpider", "status")
        return str(data.get("status", ""))

    async def ajax_stop(self):
        return await self.action("ajaxSpider", "stop")

    # ==================== Passive Scan ====================

    async def records_to_scan(self) -> int:
        data = await self.view("pscan", "recordsToScan")
        return int(data.get("recordsToScan", 0))

    # ==================== Active Scan ====================

    async def ascan_set_option(self, option: str, value: Any):
        return await self.action("ascan", f"setOption{option}", Integer=value)

    async def ascan_scan(self, url: str, context_id: str) -> str:
        data = await self.action(
            "ascan", "scan", url=url, recurse="true", inScopeOnly="true", contextId=context_id
        )
        return str(data.get("scan", ""))

    async def ascan_status(self, scan_id: str) -> int:
        data = await self.view("ascan", "status", scanId=scan_id)
        return int(data.get("status", 0))

    async def ascan_stop(self, scan_id: str):
        return await self.action("ascan", "stop", scanId=scan_id)

    async def ascan_stop_all(self):
        return await self.action("ascan", "stopAllScans")
