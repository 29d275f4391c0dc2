"""
Providers for customer-operated databases behind a remote query proxy.

The application never holds a database socket: each operation is POSTed as
JSON to an HTTP function that executes it against the customer's database.

- PostgresProvider sends the structured QueryModel payload and lets the
  proxy build SQL.
- MySQLProvider compiles parameterized SQL client-side and sends
  ``{sql, params}``.

Transport failures (unreachable host, timeouts, non-JSON replies) come back
as error envelopes, never as exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import aiohttp

from ..auth import AuthResponse, AuthSession, AuthUser, SessionAuthProvider
from ..config import ProviderConfig
from ..exceptions import StorageConnectionError, StorageLayerError
from ..query.model import QueryModel, QueryOperation
from ..query.result import QueryResult, shape_rows
from ..query.sql import SQLCompiler
from ..query.wire import decode_response, encode_health_check, encode_query
from ..realtime import PollingRealtimeMixin
from ..security import SecurityPolicy
from .base import StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ProxyAuthProvider(SessionAuthProvider):
    """Password auth through the proxy's companion auth function.

    Request: ``{action: "signin" | "signup", email, password, userData?}``
    Response: ``{user, session}`` or ``{error}``
    """

    def __init__(self, auth_url: str | None, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.auth_url = auth_url
        self.timeout = timeout

    async def _call(self, payload: dict[str, Any]) -> AuthResponse:
        if not self.auth_url:
            return AuthResponse(error=StorageLayerError("No auth endpoint configured"))

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.auth_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return AuthResponse(error=StorageConnectionError(self.auth_url, e))

        if not isinstance(body, dict):
            return AuthResponse(error=StorageLayerError("Malformed auth response"))
        if body.get("error"):
            return AuthResponse(error=StorageLayerError(str(body["error"])))

        user = AuthUser.from_dict(body["user"]) if body.get("user") else None
        session_data = body.get("session")
        auth_session = AuthSession.from_dict(session_data) if session_data else None
        return AuthResponse(user=user, session=auth_session)

    async def sign_up(
        self, email: str, password: str, user_data: dict[str, Any] | None = None
    ) -> AuthResponse:
        return await self._call(
            {"action": "signup", "email": email, "password": password, "userData": user_data}
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        response = await self._call({"action": "signin", "email": email, "password": password})
        if response.session is not None:
            self.set_session(response.session)
        return response


class RemoteQueryProvider(PollingRealtimeMixin, StorageProvider):
    """Shared transport for proxy-backed providers."""

    proxy_env_var = "HELPDESK_PROXY_URL"
    auth_function = "postgres-auth"

    def __init__(
        self,
        config: ProviderConfig,
        security_policy: SecurityPolicy | None = None,
        auth: SessionAuthProvider | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        proxy_url = config.connection.get("proxy_url") or os.environ.get(self.proxy_env_var)
        auth_url = config.connection.get("auth_url")
        if auth_url is None and proxy_url:
            auth_url = proxy_url.rsplit("/", 1)[0] + "/" + self.auth_function
        super().__init__(config, security_policy, auth or ProxyAuthProvider(auth_url, timeout))

        self.proxy_url: str | None = proxy_url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.connection.get("access_token")
        if isinstance(self.auth, SessionAuthProvider) and self.auth.session is not None:
            token = self.auth.session.access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, payload: dict[str, Any]) -> Any:
        """POST a payload and return the decoded JSON body.

        Raises:
            aiohttp.ClientError, asyncio.TimeoutError: On transport failure.
        """
        if self._session is None or self.proxy_url is None:
            raise aiohttp.ClientConnectionError("proxy session is not open")

        async with self._session.post(
            self.proxy_url,
            json=payload,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {"error": (await response.text()) or f"HTTP {response.status}"}
            if response.status >= 400 and not (isinstance(body, dict) and body.get("error")):
                body = {"error": f"HTTP {response.status}"}
            return body

    async def _do_initialize(self) -> None:
        if not self.proxy_url:
            raise StorageConnectionError(self.name, "no proxy_url configured")
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        healthy, error = await self._probe()
        if not healthy:
            await self._close_session()
            raise StorageConnectionError(self.proxy_url, error or "health check failed")

    async def _do_disconnect(self) -> None:
        await self._stop_polling()
        await self._close_session()

    async def _close_session(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _probe(self) -> tuple[bool, str | None]:
        try:
            body = await self._post(encode_health_check(self.connection))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return False, str(e) or type(e).__name__
        if not isinstance(body, dict):
            return False, "malformed health response"
        return bool(body.get("healthy")), body.get("error")

    async def health_check(self) -> bool:
        healthy, error = await self._probe()
        if not healthy:
            logger.warning(f"{self.name} health check failed: {error}")
        return healthy

    def _encode(self, model: QueryModel) -> dict[str, Any]:
        return encode_query(model)

    def _decode(self, body: Any, model: QueryModel) -> QueryResult:
        return decode_response(body, model)

    async def _execute(self, model: QueryModel) -> QueryResult:
        try:
            payload = self._encode(model)
        except StorageLayerError as e:
            return QueryResult.failure(e)

        try:
            body = await self._post(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{self.name} {model.operation.value} on {model.table} failed: {e}")
            return QueryResult.failure(StorageConnectionError(self.proxy_url or self.name, e))
        return self._decode(body, model)


class PostgresProvider(RemoteQueryProvider):
    """PostgreSQL via the ``postgres-query`` proxy function."""

    name = "PostgreSQL"
    provider_type = "postgres"
    dialect = "postgres"


class MySQLProvider(RemoteQueryProvider):
    """MySQL via the ``mysql-query`` proxy function.

    SQL is compiled here; the proxy only binds parameters and executes.
    """

    name = "MySQL"
    provider_type = "mysql"
    dialect = "mysql"
    proxy_env_var = "HELPDESK_MYSQL_PROXY_URL"
    auth_function = "mysql-auth"

    def __init__(
        self,
        config: ProviderConfig,
        security_policy: SecurityPolicy | None = None,
        auth: SessionAuthProvider | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(config, security_policy, auth, session, timeout)
        self._compiler = SQLCompiler("mysql")

    def _encode(self, model: QueryModel) -> dict[str, Any]:
        compiled = self._compiler.compile(model)
        return {
            "operation": model.operation.value,
            "table": model.table,
            "sql": compiled.sql,
            "params": compiled.params,
            "count": "exact" if model.count else None,
        }

    def _decode(self, body: Any, model: QueryModel) -> QueryResult:
        result = decode_response(body, model)
        if result.error is not None:
            return result
        if model.operation is QueryOperation.SELECT:
            rows = result.data or []
            return shape_rows(
                rows, model.single, model.maybe_single, model.table, "select", result.count
            )
        return result
