"""
Tests for the proxy-backed PostgreSQL and MySQL providers.

A fake query proxy runs on an aiohttp test server and records every
request it receives.
"""

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from helpdesk_storage.config import ProviderConfig
from helpdesk_storage.exceptions import (
    QueryExecutionError,
    SecurityDenialError,
    StorageConnectionError,
)
from helpdesk_storage.providers import MySQLProvider, PostgresProvider
from helpdesk_storage.security import NIL_UUID, default_helpdesk_policy


class FakeProxy:
    """Answers health checks and returns canned results per table."""

    def __init__(self):
        self.healthy = True
        self.requests: list[dict[str, Any]] = []
        self.authorization: list[str | None] = []
        self.results: dict[str, Any] = {}
        self.errors: dict[str, dict[str, Any]] = {}

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append(body)
        self.authorization.append(request.headers.get("Authorization"))

        if body["operation"] == "health_check":
            return web.json_response({"healthy": self.healthy})

        table = body["table"]
        if table in self.errors:
            return web.json_response({"error": self.errors[table]}, status=400)
        return web.json_response({"result": self.results.get(table, [])})

    def queries(self) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["operation"] != "health_check"]


@pytest.fixture
async def fake_proxy():
    proxy = FakeProxy()
    app = web.Application()
    app.router.add_post("/functions/v1/postgres-query", proxy.handle)
    app.router.add_post("/functions/v1/mysql-query", proxy.handle)
    server = TestServer(app)
    await server.start_server()
    proxy.base_url = str(server.make_url("/functions/v1"))
    yield proxy
    await server.close()


def server_config(provider_type: str, proxy_url: str, **extra) -> ProviderConfig:
    connection = {
        "host": "db.internal",
        "port": 5432 if provider_type == "postgres" else 3306,
        "database": "helpdesk",
        "username": "app",
        "password": "secret",
        "proxy_url": proxy_url,
        **extra,
    }
    return ProviderConfig(type=provider_type, connection=connection)


@pytest.fixture
async def postgres(fake_proxy):
    provider = PostgresProvider(
        server_config("postgres", f"{fake_proxy.base_url}/postgres-query")
    )
    await provider.initialize()
    yield provider
    await provider.close()


class TestPostgresProvider:
    @pytest.mark.asyncio
    async def test_initialize_runs_health_check(self, fake_proxy, postgres):
        assert fake_proxy.requests[0]["operation"] == "health_check"
        assert fake_proxy.requests[0]["connectionConfig"]["host"] == "db.internal"

    @pytest.mark.asyncio
    async def test_unhealthy_proxy_fails_initialize(self, fake_proxy):
        fake_proxy.healthy = False
        provider = PostgresProvider(
            server_config("postgres", f"{fake_proxy.base_url}/postgres-query")
        )
        with pytest.raises(StorageConnectionError):
            await provider.initialize()
        assert provider.is_initialized is False

    @pytest.mark.asyncio
    async def test_missing_proxy_url_fails_initialize(self, monkeypatch):
        monkeypatch.delenv("HELPDESK_PROXY_URL", raising=False)
        provider = PostgresProvider(
            ProviderConfig(
                type="postgres",
                connection={
                    "host": "h",
                    "port": 5432,
                    "database": "d",
                    "username": "u",
                    "password": "p",
                },
            )
        )
        with pytest.raises(StorageConnectionError):
            await provider.initialize()

    @pytest.mark.asyncio
    async def test_select_sends_structured_payload(self, fake_proxy, postgres):
        fake_proxy.results["tickets"] = [{"id": 1, "title": "VPN"}]
        result = await (
            postgres.from_("tickets").select("id, title").eq("status", "open").limit(5).execute()
        )

        assert result.error is None
        assert result.data == [{"id": 1, "title": "VPN"}]
        assert result.count == 1
        sent = fake_proxy.queries()[-1]
        assert sent["operation"] == "select"
        assert sent["filters"] == [{"column": "status", "operator": "eq", "value": "open"}]
        assert sent["limit"] == 5

    @pytest.mark.asyncio
    async def test_proxy_error_becomes_query_error(self, fake_proxy, postgres):
        fake_proxy.errors["tickets"] = {"message": "relation does not exist", "code": "42P01"}
        result = await postgres.from_("tickets").select("*").execute()
        assert result.data is None
        assert isinstance(result.error, QueryExecutionError)
        assert result.error.code == "42P01"

    @pytest.mark.asyncio
    async def test_bearer_token_from_connection(self, fake_proxy):
        provider = PostgresProvider(
            server_config(
                "postgres", f"{fake_proxy.base_url}/postgres-query", access_token="tok-1"
            )
        )
        await provider.initialize()
        await provider.from_("tickets").select("*").execute()
        await provider.close()
        assert fake_proxy.authorization[-1] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_auth_url_derived_from_proxy_url(self, fake_proxy, postgres):
        assert postgres.auth.auth_url == f"{fake_proxy.base_url}/postgres-auth"


class TestProxyRowSecurity:
    """Proxy providers apply row security in-process."""

    @pytest.fixture
    async def secured(self, fake_proxy):
        provider = PostgresProvider(
            server_config("postgres", f"{fake_proxy.base_url}/postgres-query"),
            security_policy=default_helpdesk_policy(),
        )
        await provider.initialize()
        yield provider
        await provider.close()

    @pytest.mark.asyncio
    async def test_anonymous_read_gets_sentinel_filter(self, fake_proxy, secured):
        await secured.from_("tickets").select("*").execute()
        sent = fake_proxy.queries()[-1]
        assert sent["filters"] == [{"column": "id", "operator": "eq", "value": NIL_UUID}]

    @pytest.mark.asyncio
    async def test_org_filter_resolved_from_profile(self, fake_proxy, secured):
        fake_proxy.results["profiles"] = {"organization_id": "org-7"}
        secured.auth.sign_in_as("user-1")

        await secured.from_("tickets").select("*").eq("status", "open").execute()

        lookup, query = fake_proxy.queries()[-2:]
        assert lookup["table"] == "profiles"
        assert lookup["filters"] == [{"column": "id", "operator": "eq", "value": "user-1"}]
        assert query["filters"] == [
            {"column": "status", "operator": "eq", "value": "open"},
            {"column": "organization_id", "operator": "eq", "value": "org-7"},
        ]

    @pytest.mark.asyncio
    async def test_anonymous_insert_denied_without_request(self, fake_proxy, secured):
        before = len(fake_proxy.queries())
        result = await secured.from_("tickets").insert({"title": "x"}).execute()
        assert isinstance(result.error, SecurityDenialError)
        assert len(fake_proxy.queries()) == before


class TestMySQLProvider:
    @pytest.fixture
    async def mysql(self, fake_proxy):
        provider = MySQLProvider(server_config("mysql", f"{fake_proxy.base_url}/mysql-query"))
        await provider.initialize()
        yield provider
        await provider.close()

    @pytest.mark.asyncio
    async def test_sends_compiled_sql(self, fake_proxy, mysql):
        fake_proxy.results["tickets"] = [{"id": 1}]
        await mysql.from_("tickets").select("id").eq("status", "open").execute()
        sent = fake_proxy.queries()[-1]
        assert sent["sql"] == "SELECT `id` FROM `tickets` WHERE `status` = %s"
        assert sent["params"] == ["open"]
        assert sent["operation"] == "select"

    @pytest.mark.asyncio
    async def test_single_is_shaped_client_side(self, fake_proxy, mysql):
        fake_proxy.results["tickets"] = [{"id": 1}]
        result = await mysql.from_("tickets").select("id").eq("id", 1).single().execute()
        assert result.data == {"id": 1}

    @pytest.mark.asyncio
    async def test_single_with_many_rows_is_error(self, fake_proxy, mysql):
        fake_proxy.results["tickets"] = [{"id": 1}, {"id": 2}]
        result = await mysql.from_("tickets").select("id").single().execute()
        assert result.data is None
        assert result.error is not None
