"""
Health check tests
"""

import httpx

from cloak.api.health_checks import (
    check_database_health,
    check_rpc_health,
    check_service_health,
    comprehensive_health_check,
    get_uptime,
)
from cloak.database.config import make_engine

from tests.helpers import mock_client


def _services(indexer_ok=True):
    def handler(request):
        if request.url.host == "indexer" and not indexer_ok:
            return httpx.Response(503, json={"error": "syncing"})
        if request.method == "POST":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "ok"})
        return httpx.Response(200, json={"status": "ok"})

    return mock_client(handler)


class TestHealthChecks:
    async def test_service_health(self):
        res = await check_service_health("indexer", "http://indexer", _services())
        assert res["status"] == "healthy"
        assert "response_time_ms" in res

    async def test_service_unhealthy(self):
        res = await check_service_health("indexer", "http://indexer", _services(indexer_ok=False))
        assert res["status"] == "unhealthy"
        assert "503" in res["error"]

    async def test_rpc_error_payload_is_unhealthy(self):
        client = mock_client(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "behind"}}))
        res = await check_rpc_health("http://rpc", client)
        assert res["status"] == "unhealthy"

    async def test_database_health(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'h.db'}")
        assert (await check_database_health(engine))["status"] == "healthy"

    async def test_comprehensive(self):
        res = await comprehensive_health_check(
            database_enabled=False,
            indexer_url="http://indexer",
            relay_url=None,
            rpc_url="http://rpc",
            client=_services(),
        )
        assert res["status"] == "healthy"
        assert res["checks"]["database"] == {"status": "disabled"}
        assert res["checks"]["relay"] == {"status": "not_configured"}
        assert res["checks"]["rpc"]["status"] == "healthy"

    async def test_comprehensive_unhealthy_component(self):
        res = await comprehensive_health_check(
            database_enabled=False, indexer_url="http://indexer", client=_services(indexer_ok=False)
        )
        assert res["status"] == "unhealthy"

    def test_uptime(self):
        assert get_uptime()["uptime_seconds"] >= 0
