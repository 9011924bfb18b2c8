"""
ZapClient against a local aiohttp server speaking the ZAP JSON API shape
"""
import asyncio
import socket
import struct

import pytest
from aiohttp import web
from aiohttp import test_utils

from authscan.errors import TransientNetworkError, ZapApiError
from authscan.retry import with_retry
from authscan.zap_client import ZapClient
from tests.conftest import no_sleep

RESPONSES = {
    "/JSON/core/view/version/": (200, {"version": "2.14.0"}),
    "/JSON/spider/view/status/": (200, {"status": "55"}),
    "/JSON/context/action/newContext/": (200, {"contextId": "4"}),
    "/JSON/context/action/removeContext/": (400, {"code": "does_not_exist", "message": "Does Not Exist"}),
    "/JSON/pscan/view/recordsToScan/": (200, ["not", "an", "object"]),
}


def run_against_server(scenario, host_header=""):
    seen = []

    async def handler(request):
        seen.append({"path": request.path, "query": dict(request.query), "headers": dict(request.headers)})
        if request.path == "/OTHER/core/other/htmlreport/":
            return web.Response(body=b"<html>report</html>", content_type="text/html")
        status, body = RESPONSES.get(request.path, (404, {"code": "no_implementor", "message": "No Implementor"}))
        return web.json_response(body, status=status)

    async def main():
        app = web.Application()
        app.router.add_get("/{tail:.*}", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        client = ZapClient(str(server.make_url("/")), api_key="secret", host_header=host_header)
        try:
            return await scenario(client)
        finally:
            await client.close()
            await server.close()

    return asyncio.run(main()), seen


class TestZapClient:

    def test_views_decode_payloads(self):
        async def scenario(client):
            return await client.version(), await client.spider_status("1"), await client.new_context("auth_scan_s1")

        (version, status, context_id), seen = run_against_server(scenario)
        assert version == "2.14.0"
        assert status == 55
        assert context_id == "4"
        assert seen[0]["headers"]["X-ZAP-API-Key"] == "secret"
        assert seen[0]["query"]["apikey"] == "secret"
        assert seen[2]["query"]["contextName"] == "auth_scan_s1"

    def test_engine_error_carries_code(self):
        async def scenario(client):
            await client.remove_context("auth_scan_s1")

        with pytest.raises(ZapApiError) as excinfo:
            run_against_server(scenario)
        assert excinfo.value.does_not_exist
        assert excinfo.value.status == 400

    def test_non_object_payload_rejected(self):
        async def scenario(client):
            await client.records_to_scan()

        with pytest.raises(ZapApiError):
            run_against_server(scenario)

    def test_html_report_is_raw_bytes(self):
        async def scenario(client):
            return await client.html_report()

        report, seen = run_against_server(scenario)
        assert report == b"<html>report</html>"
        assert seen[0]["path"] == "/OTHER/core/other/htmlreport/"

    def test_option_setters_use_integer_param(self):
        async def scenario(client):
            with pytest.raises(ZapApiError):
                await client.spider_set_option("MaxDepth", 15)

        _, seen = run_against_server(scenario)
        assert seen[0]["path"] == "/JSON/spider/action/setOptionMaxDepth/"
        assert seen[0]["query"]["Integer"] == "15"

    def test_connection_reset_is_retried_then_exhausted(self):
        accepted = []

        async def reset_connection(reader, writer):
            accepted.append(1)
            await reader.readuntil(b"\r\n\r\n")
            # zero linger turns close into an RST
            writer.get_extra_info("socket").setsockopt(
                socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0)
            )
            writer.transport.abort()

        async def main():
            server = await asyncio.start_server(reset_connection, "127.0.0.1", 0)
            port = server.sockets[0].getsockname()[1]
            client = ZapClient(f"http://127.0.0.1:{port}")
            try:
                await with_retry(client.version, "Check engine", max_attempts=3, sleep=no_sleep)
            finally:
                await client.close()
                server.close()
                await server.wait_closed()

        with pytest.raises(TransientNetworkError):
            asyncio.run(main())
        assert len(accepted) == 3
