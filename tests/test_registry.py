"""
Tests for the provider registry.

Registry behavior is checked against a counting fake provider so that
instance reuse and disconnect counts are observable.
"""

import asyncio

import pytest

from helpdesk_storage.config import ProviderConfig
from helpdesk_storage.exceptions import (
    InvalidConfigError,
    StorageConnectionError,
    StorageLayerError,
    UnknownProviderError,
)
from helpdesk_storage.providers import SQLiteProvider
from helpdesk_storage.providers.base import StorageProvider
from helpdesk_storage.query import QueryResult
from helpdesk_storage.registry import (
    ProviderMetadata,
    ProviderRegistry,
    create_default_registry,
)
from helpdesk_storage.validation import LocalDatabaseConnection


class CountingProvider(StorageProvider):
    name = "counting"
    provider_type = "fake"

    def __init__(self, config, fail_disconnect=False):
        super().__init__(config)
        self.disconnects = 0
        self.fail_disconnect = fail_disconnect

    async def _do_initialize(self):
        pass

    async def _do_disconnect(self):
        self.disconnects += 1
        if self.fail_disconnect:
            raise StorageConnectionError("fake", "socket already closed")

    async def health_check(self):
        return self._initialized

    async def _execute(self, model):
        return QueryResult.success([])


class SpyFactory:
    def __init__(self, fail_disconnect=False, error=None, delay=0.0):
        self.calls: list[ProviderConfig] = []
        self.delay = delay
        self.created: list[CountingProvider] = []
        self.fail_disconnect = fail_disconnect
        self.error = error

    async def __call__(self, config):
        self.calls.append(config)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        provider = CountingProvider(config, self.fail_disconnect)
        await provider.initialize()
        self.created.append(provider)
        return provider


def fake_metadata(factory, schema=LocalDatabaseConnection, features=None):
    return ProviderMetadata(
        name="Fake",
        version="1.0.0",
        description="Counting test provider",
        factory=factory,
        supported_features=features or [],
        config_schema=schema,
    )


def fake_config(path=":memory:"):
    return {"type": "fake", "connection": {"path": path}}


@pytest.fixture
def spy():
    return SpyFactory()


@pytest.fixture
def registry(spy):
    registry = ProviderRegistry()
    registry.register("fake", fake_metadata(spy, features=["realtime"]))
    return registry


class TestRegistration:
    def test_register_and_lookup(self, registry):
        assert registry.get_metadata("fake").name == "Fake"
        assert "fake" in registry.list_providers()

    def test_supports_feature(self, registry):
        assert registry.supports_feature("fake", "realtime") is True
        assert registry.supports_feature("fake", "file_storage") is False
        assert registry.supports_feature("missing", "realtime") is False

    def test_unregister(self, registry):
        registry.unregister("fake")
        assert registry.get_metadata("fake") is None

    def test_default_registry_has_builtin_providers(self):
        registry = create_default_registry()
        assert set(registry.list_providers()) == {
            "supabase",
            "postgres",
            "mysql",
            "sqlite",
            "duckdb",
        }
        assert registry.supports_feature("supabase", "file_storage") is True

    def test_every_builtin_provider_is_exported(self):
        import helpdesk_storage

        for name in ("SupabaseProvider", "DuckDBProvider", "SQLiteProvider"):
            assert name in helpdesk_storage.__all__
            assert isinstance(getattr(helpdesk_storage, name), type)


class TestInstanceReuse:
    @pytest.mark.asyncio
    async def test_equal_config_reuses_instance(self, registry, spy):
        first = await registry.get_instance(fake_config())
        second = await registry.get_instance(fake_config())
        assert first is second
        assert len(spy.calls) == 1

    @pytest.mark.asyncio
    async def test_changed_config_disconnects_old_exactly_once(self, registry, spy):
        first = await registry.get_instance(fake_config())
        second = await registry.get_instance(fake_config("helpdesk.db"))

        assert second is not first
        assert first.disconnects == 1
        assert second.disconnects == 0
        assert registry.get_provider("fake") is second

    @pytest.mark.asyncio
    async def test_create_provider_always_rebuilds(self, registry, spy):
        first = await registry.create_provider(fake_config())
        second = await registry.create_provider(fake_config())
        assert first is not second
        assert first.disconnects == 1

    @pytest.mark.asyncio
    async def test_factory_failure_caches_nothing(self):
        factory = SpyFactory(error=StorageConnectionError("fake", "refused"))
        registry = ProviderRegistry()
        registry.register("fake", fake_metadata(factory))

        with pytest.raises(StorageConnectionError):
            await registry.create_provider(fake_config())
        assert registry.get_provider("fake") is None

    @pytest.mark.asyncio
    async def test_unregistered_type_without_schema_accepts_any_connection(self, spy):
        registry = ProviderRegistry()
        registry.register("fake", fake_metadata(spy, schema=None))
        provider = await registry.create_provider({"type": "fake", "connection": {"x": 1}})
        assert provider.connection == {"x": 1}


class TestConcurrentAccess:
    @pytest.mark.asyncio
    async def test_concurrent_get_instance_builds_once(self):
        factory = SpyFactory(delay=0.05)
        registry = ProviderRegistry()
        registry.register("fake", fake_metadata(factory))

        first, second = await asyncio.gather(
            registry.get_instance(fake_config()),
            registry.get_instance(fake_config()),
        )

        assert first is second
        assert len(factory.calls) == 1
        assert registry.get_provider("fake") is first

    @pytest.mark.asyncio
    async def test_concurrent_create_leaves_one_live_instance(self):
        factory = SpyFactory(delay=0.05)
        registry = ProviderRegistry()
        registry.register("fake", fake_metadata(factory))

        await asyncio.gather(
            registry.create_provider(fake_config()),
            registry.create_provider(fake_config("helpdesk.db")),
        )

        live = [provider for provider in factory.created if provider.disconnects == 0]
        assert len(factory.created) == 2
        assert live == [registry.get_provider("fake")]
        assert sum(provider.disconnects for provider in factory.created) == 1


class TestValidationBeforeFactory:
    @pytest.mark.asyncio
    async def test_unknown_type_raises_before_any_factory(self, registry, spy):
        with pytest.raises(UnknownProviderError) as exc_info:
            await registry.create_provider({"type": "oracle", "connection": {}})
        assert exc_info.value.available == ["fake"]
        assert spy.calls == []

    @pytest.mark.asyncio
    async def test_mysql_rejects_postgres_only_fields(self):
        spy = SpyFactory()
        registry = ProviderRegistry()
        registry.register("mysql", fake_metadata(spy, schema=None))
        config = {
            "type": "mysql",
            "connection": {
                "host": "db",
                "port": 3306,
                "database": "helpdesk",
                "username": "app",
                "password": "secret",
                "sslmode": "require",
            },
        }

        with pytest.raises(InvalidConfigError) as exc_info:
            await registry.create_provider(config)
        assert any("sslmode" in error for error in exc_info.value.errors)
        assert spy.calls == []

    @pytest.mark.asyncio
    async def test_invalid_config_keeps_existing_instance(self, registry, spy):
        first = await registry.get_instance(fake_config())
        with pytest.raises(InvalidConfigError):
            await registry.get_instance({"type": "fake", "connection": {"path": 7}})
        assert first.disconnects == 0
        assert registry.get_provider("fake") is first


class TestActiveProvider:
    @pytest.mark.asyncio
    async def test_set_and_get_active(self, registry):
        provider = await registry.get_instance(fake_config())
        registry.set_active_provider("fake")
        assert registry.get_active_provider() is provider

    def test_set_active_without_instance_raises(self, registry):
        with pytest.raises(KeyError):
            registry.set_active_provider("fake")

    @pytest.mark.asyncio
    async def test_destroy_clears_active(self, registry):
        await registry.get_instance(fake_config())
        registry.set_active_provider("fake")
        await registry.destroy_provider("fake")
        assert registry.get_active_provider() is None


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_unknown_is_noop(self, registry):
        await registry.destroy_provider("fake")

    @pytest.mark.asyncio
    async def test_failed_disconnect_still_drops_entry(self):
        factory = SpyFactory(fail_disconnect=True)
        registry = ProviderRegistry()
        registry.register("fake", fake_metadata(factory))
        await registry.create_provider(fake_config())

        with pytest.raises(StorageConnectionError):
            await registry.destroy_provider("fake")
        assert registry.get_provider("fake") is None

    @pytest.mark.asyncio
    async def test_destroy_all_aggregates_failures(self):
        failing = SpyFactory(fail_disconnect=True)
        healthy = SpyFactory()
        registry = ProviderRegistry()
        registry.register("one", fake_metadata(failing))
        registry.register("two", fake_metadata(healthy))
        await registry.create_provider({"type": "one", "connection": {}})
        await registry.create_provider({"type": "two", "connection": {}})

        with pytest.raises(StorageLayerError) as exc_info:
            await registry.destroy_all()

        assert len(exc_info.value.details["errors"]) == 1
        assert healthy.created[0].disconnects == 1
        assert registry.get_provider("one") is None
        assert registry.get_provider("two") is None


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_sqlite_connection_succeeds_without_caching(self):
        registry = create_default_registry()
        outcome = await registry.test_connection({"type": "sqlite", "connection": {}})
        assert outcome.success is True
        assert outcome.error is None
        assert registry.get_provider("sqlite") is None

    @pytest.mark.asyncio
    async def test_invalid_config_reports_error(self):
        registry = create_default_registry()
        outcome = await registry.test_connection({"type": "postgres", "connection": {}})
        assert outcome.success is False
        assert "host" in outcome.error

    @pytest.mark.asyncio
    async def test_default_registry_builds_secured_sqlite(self):
        registry = create_default_registry()
        provider = await registry.get_instance({"type": "sqlite", "connection": {}})
        assert isinstance(provider, SQLiteProvider)
        assert provider.security_policy is not None
        await registry.destroy_all()
