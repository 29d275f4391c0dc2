"""Tests for the in-memory session auth provider."""

import pytest

from helpdesk_storage.auth import AuthEvent, AuthSession, SessionAuthProvider


class TestSessionAuthProvider:
    @pytest.mark.asyncio
    async def test_sign_in_as_sets_identity(self):
        auth = SessionAuthProvider()
        assert auth.current_user_id is None

        auth.sign_in_as("agent-1", "agent@example.com")

        user = await auth.get_user()
        assert auth.current_user_id == "agent-1"
        assert user.email == "agent@example.com"

    @pytest.mark.asyncio
    async def test_listeners_see_sign_in_and_out(self):
        auth = SessionAuthProvider()
        events = []
        auth.on_auth_state_change(lambda event, session: events.append(event))

        auth.sign_in_as("agent-1")
        await auth.sign_out()
        await auth.sign_out()

        assert events == [AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT]

    def test_unsubscribe_is_idempotent(self):
        auth = SessionAuthProvider()
        events = []
        unsubscribe = auth.on_auth_state_change(lambda event, session: events.append(event))
        unsubscribe()
        unsubscribe()
        auth.sign_in_as("agent-1")
        assert events == []

    def test_failing_listener_does_not_block_others(self):
        auth = SessionAuthProvider()
        events = []

        def broken(event, session):
            raise RuntimeError("listener bug")

        auth.on_auth_state_change(broken)
        auth.on_auth_state_change(lambda event, session: events.append(event))
        auth.sign_in_as("agent-1")
        assert events == [AuthEvent.SIGNED_IN]

    @pytest.mark.asyncio
    async def test_password_flows_are_unavailable(self):
        auth = SessionAuthProvider()
        response = await auth.sign_in_with_password("a@example.com", "pw")
        assert response.error is not None
        assert response.session is None
        assert auth.current_user_id is None


class TestAuthSession:
    def test_from_dict_parses_epoch_expiry(self):
        session = AuthSession.from_dict(
            {
                "access_token": "jwt",
                "expires_at": 1700000000,
                "user": {"id": 7, "user_metadata": {"role": "agent"}},
            }
        )
        assert session.user.id == "7"
        assert session.user.metadata == {"role": "agent"}
        assert session.expires_at.year == 2023

    def test_from_dict_parses_iso_expiry(self):
        session = AuthSession.from_dict(
            {"access_token": "jwt", "expires_at": "2030-01-01T00:00:00", "user": {"id": "u"}}
        )
        assert session.expires_at.year == 2030
