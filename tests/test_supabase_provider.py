"""
Tests for the Supabase provider.

The supabase client is replaced by a recording fake: builder calls are
captured in order and ``execute`` returns a canned response.
"""

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError
from supabase import StorageException

from helpdesk_storage.config import ProviderConfig
from helpdesk_storage.exceptions import QueryExecutionError, StorageConnectionError
from helpdesk_storage.providers.supabase import SupabaseProvider
from helpdesk_storage.realtime import ChangeEvent
from helpdesk_storage.security import default_helpdesk_policy

CONFIG = ProviderConfig(
    type="supabase",
    connection={"url": "https://project.supabase.co", "anon_key": "anon"},
)


class MockResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class RecordingQuery:
    """Stands in for a PostgREST request builder."""

    def __init__(self, client, target):
        self.client = client
        self.target = target
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    def names(self):
        return [name for name, _, _ in self.calls]

    async def execute(self):
        if self.client.error is not None:
            raise self.client.error
        return self.client.response


class FakeClient:
    def __init__(self):
        self.queries: list[RecordingQuery] = []
        self.response = MockResponse([])
        self.error = None
        self.storage = MagicMock()
        self.auth = MagicMock()
        self.remove_channel = AsyncMock()
        self.channels = []

    def table(self, name):
        query = RecordingQuery(self, name)
        self.queries.append(query)
        return query

    def rpc(self, function, params):
        query = RecordingQuery(self, function)
        query.calls.append(("rpc", (function, params), {}))
        self.queries.append(query)
        return query

    def channel(self, name):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        self.channels.append(channel)
        return channel


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
async def provider(client):
    provider = SupabaseProvider(CONFIG, client=client)
    await provider.initialize()
    yield provider
    await provider.close()


class TestInitialization:
    @pytest.mark.asyncio
    async def test_missing_key_fails(self):
        provider = SupabaseProvider(
            ProviderConfig(type="supabase", connection={"url": "https://project.supabase.co"})
        )
        with pytest.raises(StorageConnectionError):
            await provider.initialize()

    @pytest.mark.asyncio
    async def test_health_check(self, provider, client):
        assert await provider.health_check() is True
        assert client.queries[-1].target == "profiles"

        client.error = httpx.ConnectError("refused")
        assert await provider.health_check() is False

    @pytest.mark.asyncio
    async def test_injected_client_survives_disconnect(self, client):
        provider = SupabaseProvider(CONFIG, client=client)
        await provider.initialize()
        await provider.disconnect()
        assert provider.client is client


class TestQueryMapping:
    @pytest.mark.asyncio
    async def test_select_maps_filters_in_order(self, provider, client):
        client.response = MockResponse([{"id": 1}], count=None)
        result = await (
            provider.from_("tickets")
            .select("id")
            .eq("status", "open")
            .in_("id", [1, 2])
            .is_("organization_id", None)
            .overlaps("tags", ["billing"])
            .order("updated_at", ascending=False)
            .limit(5)
            .execute()
        )

        assert result.data == [{"id": 1}]
        assert client.queries[-1].calls == [
            ("select", ("id",), {"count": None}),
            ("eq", ("status", "open"), {}),
            ("in_", ("id", [1, 2]), {}),
            ("is_", ("organization_id", "null"), {}),
            ("ov", ("tags", ["billing"]), {}),
            ("order", ("updated_at",), {"desc": True}),
            ("limit", (5,), {}),
        ]

    @pytest.mark.asyncio
    async def test_is_boolean_literal(self, provider, client):
        await provider.from_("profiles").select("*").is_("active", True).execute()
        assert ("is_", ("active", "true"), {}) in client.queries[-1].calls

    @pytest.mark.asyncio
    async def test_limit_wins_over_range(self, provider, client):
        await provider.from_("tickets").select("*").range(0, 9).limit(3).execute()
        names = client.queries[-1].names()
        assert "limit" in names
        assert "range" not in names

    @pytest.mark.asyncio
    async def test_range_alone(self, provider, client):
        await provider.from_("tickets").select("*").range(10, 19).execute()
        assert ("range", (10, 19), {}) in client.queries[-1].calls

    @pytest.mark.asyncio
    async def test_exact_count(self, provider, client):
        client.response = MockResponse([{"id": 1}], count=42)
        result = await provider.from_("tickets").select("id", count="exact").execute()
        assert client.queries[-1].calls[0] == ("select", ("id",), {"count": "exact"})
        assert result.count == 42

    @pytest.mark.asyncio
    async def test_insert(self, provider, client):
        await provider.from_("tickets").insert({"title": "x"}).execute()
        assert client.queries[-1].calls == [("insert", ([{"title": "x"}],), {"count": None})]

    @pytest.mark.asyncio
    async def test_update_applies_filters(self, provider, client):
        await provider.from_("tickets").update({"status": "closed"}).eq("id", 3).execute()
        assert client.queries[-1].names() == ["update", "eq"]

    @pytest.mark.asyncio
    async def test_maybe_single_without_match(self, provider, client):
        client.response = None
        result = await provider.from_("profiles").select("*").eq("id", "x").maybe_single().execute()
        assert result.error is None
        assert result.data is None


class TestErrors:
    @pytest.mark.asyncio
    async def test_api_error_becomes_query_error(self, provider, client):
        client.error = APIError(
            {"message": "permission denied", "code": "42501", "hint": None, "details": None}
        )
        result = await provider.from_("tickets").select("*").execute()
        assert isinstance(result.error, QueryExecutionError)
        assert result.error.code == "42501"
        assert result.error.table == "tickets"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_connection_error(self, provider, client):
        client.error = httpx.ConnectError("refused")
        result = await provider.from_("tickets").select("*").execute()
        assert isinstance(result.error, StorageConnectionError)


class TestNativeRowSecurity:
    @pytest.mark.asyncio
    async def test_policy_is_not_applied_in_process(self, client):
        provider = SupabaseProvider(CONFIG, default_helpdesk_policy(), client=client)
        await provider.initialize()

        await provider.from_("tickets").select("*").execute()
        await provider.from_("tickets").insert({"title": "x"}).execute()

        assert provider.native_row_security is True
        assert client.queries[0].names() == ["select"]
        assert client.queries[1].names() == ["insert"]


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_rpc(self, provider, client):
        client.response = MockResponse({"open": 3})
        result = await provider.rpc("ticket_stats", {"org": "org-1"})
        assert result.data == {"open": 3}
        assert client.queries[-1].calls == [("rpc", ("ticket_stats", {"org": "org-1"}), {})]

    @pytest.mark.asyncio
    async def test_upload_and_download(self, provider, client):
        bucket = client.storage.from_.return_value
        bucket.upload = AsyncMock(return_value=SimpleNamespace(path="a/b.png"))
        bucket.download = AsyncMock(return_value=b"bytes")

        uploaded = await provider.upload_file("attachments", "a/b.png", b"bytes", "image/png")
        downloaded = await provider.download_file("attachments", "a/b.png")

        assert uploaded.data == {"path": "a/b.png"}
        bucket.upload.assert_awaited_once_with("a/b.png", b"bytes", {"content-type": "image/png"})
        assert downloaded.data == b"bytes"

    @pytest.mark.asyncio
    async def test_storage_error_is_carried(self, provider, client):
        bucket = client.storage.from_.return_value
        bucket.remove = AsyncMock(side_effect=StorageException("bucket not found"))
        result = await provider.remove_files("attachments", ["a.png"])
        assert result.data is None
        assert result.error.operation == "remove"

    @pytest.mark.asyncio
    async def test_realtime_forwards_payloads(self, provider, client):
        received = []
        unsubscribe = await provider.subscribe_changes("tickets", "INSERT", received.append)

        channel = client.channels[0]
        channel.subscribe.assert_awaited_once()
        event, forward = channel.on_postgres_changes.call_args.args
        assert event == "INSERT"

        forward({"data": {"type": "INSERT", "table": "tickets", "record": {"id": 9}}})
        assert received[0].event_type is ChangeEvent.INSERT
        assert received[0].new == {"id": 9}

        await unsubscribe()
        await unsubscribe()
        client.remove_channel.assert_awaited_once_with(channel)


class TestAuth:
    @pytest.mark.asyncio
    async def test_sign_in_sets_current_user(self, provider, client):
        user = SimpleNamespace(id="agent-1", email="a@example.com", user_metadata={})
        session = SimpleNamespace(
            access_token="jwt", refresh_token="r", expires_at=None, user=user
        )
        client.auth.sign_in_with_password = AsyncMock(
            return_value=SimpleNamespace(user=user, session=session)
        )

        response = await provider.auth.sign_in_with_password("a@example.com", "pw")

        assert response.error is None
        assert response.session.access_token == "jwt"
        assert provider.auth.current_user_id == "agent-1"


class TestCallbackTasks:
    @pytest.mark.asyncio
    async def test_async_callbacks_are_tracked_and_failures_logged(
        self, provider, client, caplog
    ):
        received = []

        async def record(payload):
            received.append(payload.new)

        async def broken(payload):
            raise RuntimeError("callback bug")

        await provider.subscribe_changes("tickets", "INSERT", record)
        await provider.subscribe_changes("tickets", "INSERT", broken)
        message = {"data": {"type": "INSERT", "table": "tickets", "record": {"id": 3}}}

        with caplog.at_level(logging.ERROR, logger="helpdesk_storage.providers.supabase"):
            for channel in client.channels:
                _, forward = channel.on_postgres_changes.call_args.args
                forward(message)
            assert len(provider._callback_tasks) == 2
            for _ in range(3):
                await asyncio.sleep(0)

        assert received == [{"id": 3}]
        assert provider._callback_tasks == set()
        assert "Change callback failed: callback bug" in caplog.text


class TestUninitialized:
    def test_building_a_query_requires_a_client(self):
        provider = SupabaseProvider(CONFIG)
        model = provider.from_("tickets").select("*").to_model()
        with pytest.raises(StorageConnectionError):
            provider._build(model)
