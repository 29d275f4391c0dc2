"""
Supabase storage provider.

The managed backend. Queries are mapped onto the supabase client's
PostgREST builder, and row security is enforced by the database's own
policies, so this provider bypasses the in-process security filter engine.

Native capabilities: realtime channels, bucket storage and RPC.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, AuthError, StorageException, acreate_client

from ..auth import AuthResponse, AuthSession, AuthUser, SessionAuthProvider
from ..config import ProviderConfig, default_supabase_config
from ..exceptions import QueryExecutionError, StorageConnectionError, StorageLayerError
from ..query.model import FilterOperator, QueryFilter, QueryModel, QueryOperation
from ..query.result import QueryResult, shape_rows
from ..realtime import ChangeCallback, ChangeEvent, RealtimePayload
from ..security import SecurityPolicy
from .base import StorageProvider
from .capabilities import FileStorageCapable, RealtimeCapable, RemoteProcedureCapable

logger = logging.getLogger(__name__)

# PostgREST builder method per operator
_FILTER_METHODS = {
    FilterOperator.EQ: "eq",
    FilterOperator.NEQ: "neq",
    FilterOperator.GT: "gt",
    FilterOperator.GTE: "gte",
    FilterOperator.LT: "lt",
    FilterOperator.LTE: "lte",
    FilterOperator.LIKE: "like",
    FilterOperator.ILIKE: "ilike",
    FilterOperator.IS: "is_",
    FilterOperator.IN: "in_",
    FilterOperator.CONTAINS: "contains",
    FilterOperator.CONTAINED_BY: "contained_by",
    FilterOperator.OVERLAPS: "ov",
}

_IS_LITERALS = {None: "null", True: "true", False: "false"}


def _user_from(obj: Any) -> AuthUser | None:
    if obj is None:
        return None
    return AuthUser(
        id=str(obj.id),
        email=getattr(obj, "email", None),
        metadata=dict(getattr(obj, "user_metadata", None) or {}),
    )


def _session_from(obj: Any) -> AuthSession | None:
    if obj is None:
        return None
    user = _user_from(obj.user)
    if user is None:
        return None
    return AuthSession.from_dict(
        {
            "access_token": obj.access_token,
            "refresh_token": getattr(obj, "refresh_token", None),
            "expires_at": getattr(obj, "expires_at", None),
            "user": {"id": user.id, "email": user.email, "metadata": user.metadata},
        }
    )


class SupabaseAuthProvider(SessionAuthProvider):
    """Password auth delegated to ``client.auth``.

    The provider attaches the client on initialize; until then every call
    returns an error response.
    """

    def __init__(self) -> None:
        super().__init__()
        self.client: AsyncClient | None = None

    def _unavailable(self) -> AuthResponse:
        return AuthResponse(error=StorageLayerError("Supabase client is not initialized"))

    async def sign_up(
        self, email: str, password: str, user_data: dict[str, Any] | None = None
    ) -> AuthResponse:
        if self.client is None:
            return self._unavailable()
        credentials: dict[str, Any] = {"email": email, "password": password}
        if user_data:
            credentials["options"] = {"data": user_data}
        try:
            response = await self.client.auth.sign_up(credentials)
        except AuthError as e:
            return AuthResponse(error=StorageLayerError(str(e)))
        return AuthResponse(user=_user_from(response.user), session=_session_from(response.session))

    async def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        if self.client is None:
            return self._unavailable()
        try:
            response = await self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except AuthError as e:
            return AuthResponse(error=StorageLayerError(str(e)))

        session = _session_from(response.session)
        if session is not None:
            self.set_session(session)
        return AuthResponse(user=_user_from(response.user), session=session)

    async def sign_out(self) -> None:
        if self.client is not None:
            try:
                await self.client.auth.sign_out()
            except AuthError as e:
                logger.warning(f"Supabase sign-out failed: {e}")
        await super().sign_out()

    async def get_session(self) -> AuthSession | None:
        if self.client is None:
            return self._session
        session = _session_from(await self.client.auth.get_session())
        self._session = session
        return session


class SupabaseProvider(
    RealtimeCapable, FileStorageCapable, RemoteProcedureCapable, StorageProvider
):
    """
    Supabase provider.

    Authoritative layer for row security: the database (RLS policies).
    A security policy passed in is kept for reference but never applied.
    """

    name = "Supabase"
    provider_type = "supabase"
    dialect = "postgres"
    native_row_security = True

    def __init__(
        self,
        config: ProviderConfig | None = None,
        security_policy: SecurityPolicy | None = None,
        auth: SupabaseAuthProvider | None = None,
        client: AsyncClient | None = None,
        health_table: str = "profiles",
        schema: str = "public",
    ):
        super().__init__(
            config or default_supabase_config(), security_policy, auth or SupabaseAuthProvider()
        )
        self.url: str = self.connection.get("url", "")
        self.client: AsyncClient | None = client
        self._owns_client = client is None
        self.health_table = health_table
        self.schema = schema
        self._channels: list[Any] = []
        self._callback_tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    async def create(
        cls,
        config: ProviderConfig | None = None,
        client: AsyncClient | None = None,
    ) -> SupabaseProvider:
        """Create and initialize a Supabase provider."""
        provider = cls(config, client=client)
        await provider.initialize()
        return provider

    async def _do_initialize(self) -> None:
        if self.client is None:
            key = self.connection.get("service_role_key") or self.connection.get("anon_key")
            if not self.url or not key:
                raise StorageConnectionError(self.name, "url and an API key are required")
            try:
                self.client = await acreate_client(self.url, key)
            except Exception as e:
                raise StorageConnectionError(self.url, e) from e
            self._owns_client = True

        if isinstance(self.auth, SupabaseAuthProvider):
            self.auth.client = self.client

    async def _do_disconnect(self) -> None:
        if self.client is None:
            return
        for channel in self._channels:
            await self.client.remove_channel(channel)
        self._channels.clear()
        for task in list(self._callback_tasks):
            task.cancel()
        if self._owns_client:
            self.client = None
        if isinstance(self.auth, SupabaseAuthProvider):
            self.auth.client = None

    async def health_check(self) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.table(self.health_table).select("id").limit(1).execute()
            return True
        except (APIError, httpx.HTTPError) as e:
            logger.warning(f"Supabase health check failed: {e}")
            return False

    # =========================================================================
    # Queries
    # =========================================================================

    def _apply_filter(self, query: Any, query_filter: QueryFilter) -> Any:
        method = getattr(query, _FILTER_METHODS[query_filter.operator])
        value = query_filter.value
        if query_filter.operator is FilterOperator.IS:
            value = next(literal for v, literal in _IS_LITERALS.items() if v is value)
        elif isinstance(value, tuple):
            value = list(value)
        return method(query_filter.column, value)

    def _build(self, model: QueryModel) -> Any:
        if self.client is None:
            raise StorageConnectionError(self.name, "provider is not initialized")
        count = "exact" if model.count else None
        query: Any = self.client.table(model.table)

        if model.operation is QueryOperation.INSERT:
            return query.insert(model.rows_to_insert(), count=count)
        if model.operation is QueryOperation.UPDATE:
            query = query.update(dict(model.update_payload or {}), count=count)
        elif model.operation is QueryOperation.DELETE:
            query = query.delete(count=count)
        else:
            query = query.select(model.select_columns, count=count)

        for query_filter in model.filters:
            query = self._apply_filter(query, query_filter)

        if model.operation is not QueryOperation.SELECT:
            return query

        for clause in model.order:
            query = query.order(clause.column, desc=not clause.ascending)
        if model.limit is not None:
            query = query.limit(model.limit)
        elif model.range is not None:
            query = query.range(model.range.start, model.range.end)
        if model.single:
            query = query.single()
        elif model.maybe_single:
            query = query.maybe_single()
        return query

    async def _execute(self, model: QueryModel) -> QueryResult:
        operation = model.operation.value
        if self.client is None:
            return QueryResult.failure(StorageConnectionError(self.name, "client is not open"))

        try:
            response = await self._build(model).execute()
        except APIError as e:
            return QueryResult.failure(
                QueryExecutionError(
                    e.message or str(e), model.table, operation, code=e.code, hint=e.hint
                )
            )
        except httpx.HTTPError as e:
            logger.warning(f"Supabase {operation} on {model.table} failed: {e}")
            return QueryResult.failure(StorageConnectionError(self.url, e))

        # maybe_single with no match yields no response at all
        if response is None:
            return QueryResult.success(None)

        if model.operation is not QueryOperation.SELECT and (model.single or model.maybe_single):
            return shape_rows(
                response.data or [], model.single, model.maybe_single, model.table, operation
            )
        return QueryResult.success(response.data, count=response.count)

    # =========================================================================
    # Realtime
    # =========================================================================

    async def subscribe_changes(
        self, table: str, event: str, callback: ChangeCallback
    ) -> Callable[[], Awaitable[None]]:
        if self.client is None:
            raise StorageConnectionError(self.name, "provider is not initialized")
        change_event = ChangeEvent(event)
        channel = self.client.channel(f"{table}-changes-{uuid.uuid4().hex[:8]}")

        def forward(message: dict[str, Any]) -> None:
            payload = self._to_payload(message, table)
            try:
                outcome = callback(payload)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_finished)
            except Exception as e:
                logger.error(f"Change callback failed for {table}: {e}")

        channel.on_postgres_changes(change_event.value, forward, table=table, schema=self.schema)
        await channel.subscribe()
        self._channels.append(channel)

        async def unsubscribe() -> None:
            if channel not in self._channels:
                return
            self._channels.remove(channel)
            if self.client is not None:
                await self.client.remove_channel(channel)

        return unsubscribe

    def _callback_finished(self, task: asyncio.Task[Any]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Change callback failed: {error}")

    def _to_payload(self, message: dict[str, Any], table: str) -> RealtimePayload:
        data = message.get("data", message)
        kind = data.get("type") or data.get("eventType") or "UPDATE"
        payload = RealtimePayload(
            event_type=ChangeEvent(kind),
            table=data.get("table", table),
            new=data.get("record") or data.get("new") or None,
            old=data.get("old_record") or data.get("old") or None,
            schema=data.get("schema", self.schema),
        )
        if data.get("commit_timestamp"):
            payload.commit_timestamp = data["commit_timestamp"]
        return payload

    # =========================================================================
    # File storage
    # =========================================================================

    def _bucket(self, bucket: str) -> Any:
        if self.client is None:
            raise StorageConnectionError(self.name, "provider is not initialized")
        return self.client.storage.from_(bucket)

    async def upload_file(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> QueryResult:
        options = {"content-type": content_type} if content_type else None
        try:
            response = await self._bucket(bucket).upload(path, data, options)
        except (StorageException, httpx.HTTPError) as e:
            return QueryResult.failure(str(e), table=bucket, operation="upload")
        return QueryResult.success({"path": getattr(response, "path", path)})

    async def download_file(self, bucket: str, path: str) -> QueryResult:
        try:
            content = await self._bucket(bucket).download(path)
        except (StorageException, httpx.HTTPError) as e:
            return QueryResult.failure(str(e), table=bucket, operation="download")
        return QueryResult.success(content)

    async def remove_files(self, bucket: str, paths: list[str]) -> QueryResult:
        try:
            removed = await self._bucket(bucket).remove(paths)
        except (StorageException, httpx.HTTPError) as e:
            return QueryResult.failure(str(e), table=bucket, operation="remove")
        return QueryResult.success(removed, count=len(paths))

    async def get_public_url(self, bucket: str, path: str) -> str:
        return await self._bucket(bucket).get_public_url(path)

    # =========================================================================
    # RPC
    # =========================================================================

    async def rpc(self, function: str, params: dict[str, Any] | None = None) -> QueryResult:
        if self.client is None:
            return QueryResult.failure(StorageConnectionError(self.name, "client is not open"))
        try:
            response = await self.client.rpc(function, params or {}).execute()
        except APIError as e:
            return QueryResult.failure(
                QueryExecutionError(e.message or str(e), function, "rpc", code=e.code, hint=e.hint)
            )
        except httpx.HTTPError as e:
            return QueryResult.failure(StorageConnectionError(self.url, e))
        return QueryResult.success(response.data, count=response.count)
