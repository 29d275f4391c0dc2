"""
Authentication surface exposed by every provider.

The caller identity held here is what row-level security filters on for
providers without native enforcement, so the session is the single source
of the current user id.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import StorageLayerError

logger = logging.getLogger(__name__)


class AuthEvent(Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass
class AuthUser:
    id: str
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthUser:
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            metadata=dict(data.get("user_metadata") or data.get("metadata") or {}),
        )


@dataclass
class AuthSession:
    access_token: str
    user: AuthUser
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthSession:
        expires_at = data.get("expires_at")
        if isinstance(expires_at, (int, float)):
            expires_at = datetime.fromtimestamp(expires_at)
        elif isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            access_token=data["access_token"],
            user=AuthUser.from_dict(data["user"]),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )


@dataclass
class AuthResponse:
    """Outcome of a sign-in or sign-up; failures are carried, not raised."""

    user: AuthUser | None = None
    session: AuthSession | None = None
    error: StorageLayerError | None = None


AuthListener = Callable[[AuthEvent, AuthSession | None], None]


class AuthProvider(ABC):
    """Sign-in/sign-out plus the current session."""

    @abstractmethod
    async def sign_up(
        self, email: str, password: str, user_data: dict[str, Any] | None = None
    ) -> AuthResponse:
        pass

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    async def get_session(self) -> AuthSession | None:
        pass

    async def get_user(self) -> AuthUser | None:
        session = await self.get_session()
        return session.user if session else None

    @property
    @abstractmethod
    def current_user_id(self) -> str | None:
        """Id of the signed-in user, or None for an anonymous caller."""

    @abstractmethod
    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        """Register a listener; returns an idempotent unsubscribe callable."""


class SessionAuthProvider(AuthProvider):
    """Holds the session in memory.

    Used directly by the embedded providers, where the host application
    authenticates users itself and hands the result over via ``set_session``.
    """

    def __init__(self) -> None:
        self._session: AuthSession | None = None
        self._listeners: list[AuthListener] = []

    @property
    def current_user_id(self) -> str | None:
        return self._session.user.id if self._session else None

    @property
    def session(self) -> AuthSession | None:
        return self._session

    async def get_session(self) -> AuthSession | None:
        return self._session

    def set_session(self, session: AuthSession | None) -> None:
        self._session = session
        self._notify(AuthEvent.SIGNED_IN if session else AuthEvent.SIGNED_OUT, session)

    def sign_in_as(self, user_id: str, email: str | None = None) -> AuthSession:
        """Adopt an already-authenticated identity."""
        session = AuthSession(access_token=f"local-{user_id}", user=AuthUser(user_id, email))
        self.set_session(session)
        return session

    async def sign_up(
        self, email: str, password: str, user_data: dict[str, Any] | None = None
    ) -> AuthResponse:
        return AuthResponse(error=StorageLayerError("Sign-up is not available for this provider"))

    async def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        return AuthResponse(
            error=StorageLayerError("Password sign-in is not available for this provider")
        )

    async def sign_out(self) -> None:
        if self._session is not None:
            self.set_session(None)

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, event: AuthEvent, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as e:
                logger.error(f"Auth listener failed on {event.value}: {e}")
