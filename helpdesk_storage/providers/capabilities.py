"""
Optional provider capabilities.

A provider declares a capability by implementing its trait. Callers check
with ``supports`` or assert with ``require_capability`` before use instead
of probing for missing attributes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ..exceptions import CapabilityNotSupportedError

if TYPE_CHECKING:
    from ..query.result import QueryResult
    from ..realtime import ChangeCallback


class Capability(Enum):
    REALTIME = "realtime"
    FILE_STORAGE = "file_storage"
    REMOTE_PROCEDURE_CALLS = "remote_procedure_calls"
    SCHEMA_INTROSPECTION = "schema_introspection"


class RealtimeCapable(ABC):
    """Push-style change notifications for a table."""

    @abstractmethod
    async def subscribe_changes(
        self, table: str, event: str, callback: ChangeCallback
    ) -> Callable[[], Awaitable[None]]:
        """Subscribe to INSERT/UPDATE/DELETE (or ``*``) on a table.

        Returns:
            Async callable that removes the subscription (safe to call twice).
        """


class FileStorageCapable(ABC):
    """Object storage organized in buckets."""

    @abstractmethod
    async def upload_file(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> QueryResult:
        pass

    @abstractmethod
    async def download_file(self, bucket: str, path: str) -> QueryResult:
        pass

    @abstractmethod
    async def remove_files(self, bucket: str, paths: list[str]) -> QueryResult:
        pass

    @abstractmethod
    async def get_public_url(self, bucket: str, path: str) -> str:
        pass


class RemoteProcedureCapable(ABC):
    """Server-side functions callable by name."""

    @abstractmethod
    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> QueryResult:
        pass


class SchemaIntrospectionCapable(ABC):
    """Providers that can describe their own tables without information_schema."""

    @abstractmethod
    async def list_tables(self) -> list[str]:
        pass

    @abstractmethod
    async def describe_table(self, table: str) -> list[dict[str, Any]]:
        """Column descriptions.

        Each entry has ``column_name``, ``data_type``, ``is_nullable``,
        ``column_default`` and ``is_primary_key``.
        """


_TRAITS: dict[Capability, type] = {
    Capability.REALTIME: RealtimeCapable,
    Capability.FILE_STORAGE: FileStorageCapable,
    Capability.REMOTE_PROCEDURE_CALLS: RemoteProcedureCapable,
    Capability.SCHEMA_INTROSPECTION: SchemaIntrospectionCapable,
}

T = TypeVar("T")


def supports(provider: Any, capability: Capability | str) -> bool:
    return isinstance(provider, _TRAITS[Capability(capability)])


def capabilities_of(provider: Any) -> set[Capability]:
    return {capability for capability, trait in _TRAITS.items() if isinstance(provider, trait)}


def require_capability(provider: T, capability: Capability | str) -> T:
    """Return the provider unchanged if it implements the capability.

    Raises:
        CapabilityNotSupportedError: If it does not.
    """
    capability = Capability(capability)
    if not supports(provider, capability):
        name = getattr(provider, "name", type(provider).__name__)
        raise CapabilityNotSupportedError(name, capability.value)
    return provider
