"""
Storage configuration.

``ProviderConfig`` describes one backend. ``StorageConfiguration`` bundles
the configured backends with the id of the active one and persists to a
YAML settings file:

```yaml
active_provider: postgres
providers:
  supabase:
    type: supabase
    connection:
      url: https://project.supabase.co
      anon_key: ...
    features:
      realtime: true
      file_storage: true
  postgres:
    type: postgres
    connection:
      host: db.internal
      port: 5432
      database: helpdesk
      username: app
      password: secret
      proxy_url: https://functions.example.com/postgres-query
```
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

FEATURE_NAMES = (
    "realtime",
    "file_storage",
    "serverless_functions",
    "full_text_search",
    "transactions",
)


@dataclass(frozen=True)
class ProviderFeatures:
    """Feature switches declared alongside a provider configuration."""

    realtime: bool = False
    file_storage: bool = False
    serverless_functions: bool = False
    full_text_search: bool = False
    transactions: bool = False

    def enabled(self) -> list[str]:
        return [name for name in FEATURE_NAMES if getattr(self, name)]

    def to_dict(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in FEATURE_NAMES}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProviderFeatures:
        data = data or {}
        return cls(**{name: bool(data.get(name, False)) for name in FEATURE_NAMES})


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a single storage provider.

    Immutable once constructed: the connection mapping is deep-copied on the
    way in, and providers take their own copy again at construction.
    """

    type: str
    connection: dict[str, Any] = field(default_factory=dict)
    features: ProviderFeatures = field(default_factory=ProviderFeatures)

    def __post_init__(self) -> None:
        object.__setattr__(self, "connection", copy.deepcopy(dict(self.connection)))
        if isinstance(self.features, dict):
            object.__setattr__(self, "features", ProviderFeatures.from_dict(self.features))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "connection": copy.deepcopy(self.connection),
            "features": self.features.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        return cls(
            type=data["type"],
            connection=data.get("connection") or {},
            features=ProviderFeatures.from_dict(data.get("features")),
        )


def default_supabase_config(url: str | None = None, anon_key: str | None = None) -> ProviderConfig:
    """The managed backend with every feature switched on."""
    connection: dict[str, Any] = {"url": url or os.environ.get("HELPDESK_SUPABASE_URL", "")}
    key = anon_key or os.environ.get("HELPDESK_SUPABASE_ANON_KEY")
    if key:
        connection["anon_key"] = key
    return ProviderConfig(
        type="supabase",
        connection=connection,
        features=ProviderFeatures(
            realtime=True,
            file_storage=True,
            serverless_functions=True,
            full_text_search=True,
            transactions=True,
        ),
    )


@dataclass
class StorageConfiguration:
    """The set of configured providers and which one is active."""

    active_provider: str = "supabase"
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    def get_active_provider_config(self) -> ProviderConfig | None:
        return self.providers.get(self.active_provider)

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self.providers:
            raise KeyError(f"No configuration for provider: {provider_id}")
        self.active_provider = provider_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_provider": self.active_provider,
            "providers": {key: value.to_dict() for key, value in self.providers.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageConfiguration:
        providers = {
            key: ProviderConfig.from_dict(value)
            for key, value in (data.get("providers") or {}).items()
        }
        return cls(
            active_provider=data.get("active_provider", "supabase"),
            providers=providers,
        )

    @classmethod
    def default(cls) -> StorageConfiguration:
        return cls(active_provider="supabase", providers={"supabase": default_supabase_config()})

    @classmethod
    def load(cls, path: str | Path) -> StorageConfiguration:
        """Load configuration from a YAML file, falling back to the default."""
        path = Path(path)
        if not path.exists():
            return cls.default()

        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Storage configuration in {path} must be a mapping")
        return cls.from_dict(data)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(self.to_dict(), sort_keys=False))

    @classmethod
    def from_env(cls) -> StorageConfiguration:
        """Create configuration from environment variables.

        HELPDESK_STORAGE_CONFIG points at a YAML file. Without it, a single
        provider is described by HELPDESK_STORAGE_PROVIDER plus either
        HELPDESK_SUPABASE_URL/HELPDESK_SUPABASE_ANON_KEY or the
        HELPDESK_DB_* variables.
        """
        config_path = os.environ.get("HELPDESK_STORAGE_CONFIG")
        if config_path:
            return cls.load(config_path)

        provider_type = os.environ.get("HELPDESK_STORAGE_PROVIDER", "supabase")
        if provider_type == "supabase":
            return cls.default()

        if provider_type in ("sqlite", "duckdb"):
            connection: dict[str, Any] = {"path": os.environ.get("HELPDESK_DB_PATH", ":memory:")}
        else:
            default_port = "3306" if provider_type == "mysql" else "5432"
            default_ssl = "false" if provider_type == "mysql" else "true"
            connection = {
                "host": os.environ.get("HELPDESK_DB_HOST", "localhost"),
                "port": int(os.environ.get("HELPDESK_DB_PORT", default_port)),
                "database": os.environ.get("HELPDESK_DB_NAME", "helpdesk"),
                "username": os.environ.get("HELPDESK_DB_USER", ""),
                "password": os.environ.get("HELPDESK_DB_PASSWORD", ""),
                "ssl": os.environ.get("HELPDESK_DB_SSL", default_ssl).lower() == "true",
            }
            proxy_url = os.environ.get("HELPDESK_DB_PROXY_URL")
            if proxy_url:
                connection["proxy_url"] = proxy_url

        return cls(
            active_provider=provider_type,
            providers={provider_type: ProviderConfig(type=provider_type, connection=connection)},
        )
