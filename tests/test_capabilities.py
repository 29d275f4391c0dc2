"""Tests for capability discovery across providers."""

import pytest

from helpdesk_storage.config import ProviderConfig
from helpdesk_storage.exceptions import CapabilityNotSupportedError
from helpdesk_storage.providers import Capability, PostgresProvider, SQLiteProvider
from helpdesk_storage.providers.capabilities import capabilities_of, require_capability, supports
from helpdesk_storage.providers.supabase import SupabaseProvider


def sqlite_provider():
    return SQLiteProvider(ProviderConfig(type="sqlite", connection={"path": ":memory:"}))


def postgres_provider():
    return PostgresProvider(
        ProviderConfig(
            type="postgres",
            connection={"proxy_url": "https://fn.example.com/functions/v1/postgres-query"},
        )
    )


class TestCapabilities:
    def test_sqlite_polls_and_introspects(self):
        assert capabilities_of(sqlite_provider()) == {
            Capability.REALTIME,
            Capability.SCHEMA_INTROSPECTION,
        }

    def test_proxy_provider_only_polls(self):
        provider = postgres_provider()
        assert supports(provider, Capability.REALTIME)
        assert not supports(provider, "file_storage")

    def test_supabase_has_storage_and_rpc(self):
        provider = SupabaseProvider(
            ProviderConfig(
                type="supabase",
                connection={"url": "https://project.supabase.co", "anon_key": "anon"},
            ),
            client=object(),
        )
        assert supports(provider, Capability.FILE_STORAGE)
        assert supports(provider, Capability.REMOTE_PROCEDURE_CALLS)
        assert not supports(provider, Capability.SCHEMA_INTROSPECTION)

    def test_require_returns_provider(self):
        provider = sqlite_provider()
        assert require_capability(provider, "schema_introspection") is provider

    def test_require_names_missing_capability(self):
        with pytest.raises(CapabilityNotSupportedError) as exc_info:
            require_capability(postgres_provider(), Capability.REMOTE_PROCEDURE_CALLS)
        assert exc_info.value.details == {
            "provider": "PostgreSQL",
            "capability": "remote_procedure_calls",
        }

    def test_unknown_capability_name(self):
        with pytest.raises(ValueError):
            supports(sqlite_provider(), "teleport")
