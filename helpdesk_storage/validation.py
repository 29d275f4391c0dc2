"""
Provider configuration validation.

Each built-in provider type declares a pydantic model for its connection
mapping. Models are strict (no silent coercion of ``"5432"`` to ``5432``)
and forbid unknown fields, so a configuration written for one backend is
rejected by another even where their shapes overlap.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import ProviderConfig
from .exceptions import InvalidIdentifierError

REDACTED = "***REDACTED***"
SECRET_FIELDS = ("password", "anon_key", "service_role_key", "api_key", "access_token")

_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$")


# =============================================================================
# Connection schemas
# =============================================================================


class _ConnectionModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class SupabaseConnection(_ConnectionModel):
    """Managed backend: addressed by project URL."""

    url: str
    anon_key: str | None = None
    service_role_key: str | None = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid Supabase URL")
        return value


class _ServerConnection(_ConnectionModel):
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    database: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    proxy_url: str | None = None
    auth_url: str | None = None
    access_token: str | None = None

    @field_validator("proxy_url", "auth_url")
    @classmethod
    def _check_proxy_url(cls, value: str | None) -> str | None:
        if value is None:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid proxy URL")
        return value


class PostgresConnection(_ServerConnection):
    """Customer-operated PostgreSQL reached through the query proxy."""

    ssl: bool = True
    sslmode: str | None = None
    db_schema: str = Field(default="public", alias="schema")

    model_config = ConfigDict(extra="forbid", strict=True, populate_by_name=True)


class MySQLConnection(_ServerConnection):
    """Customer-operated MySQL reached through the query proxy."""

    ssl: bool = False
    charset: str | None = None


class LocalDatabaseConnection(_ConnectionModel):
    """Embedded database file (``:memory:`` for a throwaway database)."""

    path: str = ":memory:"


class CustomConnection(BaseModel):
    """Anything goes: custom providers validate their own connection."""

    model_config = ConfigDict(extra="allow")


class FeaturesModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    realtime: bool = False
    file_storage: bool = False
    serverless_functions: bool = False
    full_text_search: bool = False
    transactions: bool = False


CONNECTION_SCHEMAS: dict[str, type[BaseModel]] = {
    "supabase": SupabaseConnection,
    "postgres": PostgresConnection,
    "mysql": MySQLConnection,
    "sqlite": LocalDatabaseConnection,
    "duckdb": LocalDatabaseConnection,
    "custom": CustomConnection,
}


# =============================================================================
# Validation
# =============================================================================


@dataclass
class ValidationOutcome:
    """Result of validating a provider configuration."""

    success: bool
    data: dict[str, Any] | None = None
    errors: list[str] = field(default_factory=list)


def _format_errors(exc: ValidationError, prefix: str) -> list[str]:
    messages = []
    for error in exc.errors():
        path = ".".join(str(part) for part in (prefix, *error["loc"]) if part != "")
        messages.append(f"{path}: {error['msg']}")
    return messages


def validate_provider_config(
    config: ProviderConfig | dict[str, Any],
    schema: type[BaseModel] | None = None,
) -> ValidationOutcome:
    """
    Validate a provider configuration against its connection schema.

    Args:
        config: Configuration to validate
        schema: Connection model to validate against. Defaults to the
            built-in schema registered for ``config.type``.

    Returns:
        ValidationOutcome with normalized data (defaults applied) on success,
        or field-level ``"path: message"`` errors on failure.
    """
    raw = config.to_dict() if isinstance(config, ProviderConfig) else copy.deepcopy(config)
    if not isinstance(raw, dict):
        return ValidationOutcome(success=False, errors=["config: must be a mapping"])

    provider_type = raw.get("type")
    if not isinstance(provider_type, str) or not provider_type:
        return ValidationOutcome(success=False, errors=["type: Provider type is required"])

    if schema is None:
        schema = CONNECTION_SCHEMAS.get(provider_type)
        if schema is None:
            return ValidationOutcome(
                success=False, errors=[f"type: Unknown provider type '{provider_type}'"]
            )

    errors: list[str] = []
    connection = raw.get("connection")
    connection_data: dict[str, Any] | None = None
    if not isinstance(connection, dict):
        errors.append("connection: Connection details must be a mapping")
    else:
        try:
            model = schema.model_validate(connection)
            connection_data = model.model_dump(by_alias=True, exclude_none=True)
        except ValidationError as e:
            errors.extend(_format_errors(e, "connection"))

    features_data: dict[str, Any] | None = None
    try:
        features_data = FeaturesModel.model_validate(raw.get("features") or {}).model_dump()
    except ValidationError as e:
        errors.extend(_format_errors(e, "features"))

    if errors:
        return ValidationOutcome(success=False, errors=errors)

    return ValidationOutcome(
        success=True,
        data={"type": provider_type, "connection": connection_data, "features": features_data},
    )


def validate_storage_configuration(data: dict[str, Any]) -> ValidationOutcome:
    """Validate a whole settings document (active provider plus provider map)."""
    errors: list[str] = []
    providers = data.get("providers")
    if not isinstance(providers, dict):
        return ValidationOutcome(success=False, errors=["providers: must be a mapping"])

    active = data.get("active_provider")
    if active not in providers:
        errors.append(f"active_provider: No configuration for provider '{active}'")

    normalized: dict[str, Any] = {}
    for key, provider in providers.items():
        outcome = validate_provider_config(provider)
        if outcome.success:
            normalized[key] = outcome.data
        else:
            errors.extend(f"providers.{key}.{message}" for message in outcome.errors)

    if errors:
        return ValidationOutcome(success=False, errors=errors)
    return ValidationOutcome(
        success=True, data={"active_provider": active, "providers": normalized}
    )


def sanitize_config(config: ProviderConfig | dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the configuration with credentials redacted.

    Used both for logging and as the registry's instance-cache identity.
    """
    data = config.to_dict() if isinstance(config, ProviderConfig) else copy.deepcopy(config)
    connection = data.get("connection")
    if isinstance(connection, dict):
        for key in SECRET_FIELDS:
            if connection.get(key) is not None:
                connection[key] = REDACTED
    return data


# =============================================================================
# Identifiers
# =============================================================================


def validate_identifier(identifier: str) -> bool:
    """Allow ``name`` or ``schema.name`` made of letters, digits and underscores."""
    return isinstance(identifier, str) and bool(_IDENTIFIER_PATTERN.match(identifier))


def escape_identifier(identifier: str, quote: str = '"') -> str:
    """Quote an identifier for SQL, part by part for ``schema.name``."""
    if not validate_identifier(identifier):
        raise InvalidIdentifierError(identifier)
    return ".".join(
        f"{quote}{part.replace(quote, quote * 2)}{quote}" for part in identifier.split(".")
    )
