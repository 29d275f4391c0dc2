"""
Tests for application-level row security.

Engine rules are checked directly on query models; end-to-end behavior
runs through a secured in-memory SQLite provider.
"""

import pytest
from conftest import create_sqlite, make_tickets

from helpdesk_storage.exceptions import SecurityDenialError
from helpdesk_storage.query import FilterOperator, QueryBuilder, QueryFilter, QueryResult
from helpdesk_storage.security import (
    NIL_UUID,
    SecurityFilterEngine,
    SecurityPolicyBuilder,
    default_helpdesk_policy,
)


async def _noop(model):
    return QueryResult.success([])


def model_for(table: str, **kwargs):
    builder = QueryBuilder(table, _noop)
    if "insert" in kwargs:
        return builder.insert(kwargs["insert"]).to_model()
    if "update" in kwargs:
        return builder.update(kwargs["update"]).eq("id", 1).to_model()
    return builder.select("*").to_model()


async def resolve_org(user_id):
    return {"agent-1": "org-1", "agent-2": "org-2"}.get(user_id)


@pytest.fixture
def engine():
    policy = (
        SecurityPolicyBuilder()
        .add_rls_rule("tickets", org_column="organization_id")
        .add_rls_rule("ticket_messages", user_column="sender_id")
        .add_rls_rule("kb_articles", org_column="organization_id", public_read=True)
        .build()
    )
    return SecurityFilterEngine(policy, resolve_org)


class TestPolicy:
    def test_rules_overwrite_by_table(self):
        policy = (
            SecurityPolicyBuilder()
            .add_rls_rule("tickets", user_column="owner_id")
            .add_rls_rule("tickets", org_column="organization_id")
            .build()
        )
        rule = policy.rule_for("tickets")
        assert rule.user_column is None
        assert rule.org_column == "organization_id"
        assert len(policy) == 1

    def test_policy_is_immutable(self):
        policy = SecurityPolicyBuilder().add_rls_rule("tickets", user_column="a").build()
        with pytest.raises(TypeError):
            policy.rules["profiles"] = None

    def test_default_policy_covers_helpdesk_tables(self):
        policy = default_helpdesk_policy()
        assert policy.rule_for("tickets").org_column == "organization_id"
        assert policy.rule_for("ticket_messages").user_column == "sender_id"
        assert policy.rule_for("organizations").org_column == "id"


class TestReadFilters:
    @pytest.mark.asyncio
    async def test_anonymous_read_gets_nil_filter(self, engine):
        model = await engine.apply_rls_filters(model_for("tickets"), None)
        assert model.filters == (QueryFilter("id", FilterOperator.EQ, NIL_UUID),)

    @pytest.mark.asyncio
    async def test_org_rule_appends_caller_org(self, engine):
        model = await engine.apply_rls_filters(model_for("tickets"), "agent-1")
        assert model.filters == (QueryFilter("organization_id", FilterOperator.EQ, "org-1"),)

    @pytest.mark.asyncio
    async def test_user_without_org_sees_nothing(self, engine):
        model = await engine.apply_rls_filters(model_for("tickets"), "stranger")
        assert model.filters == (QueryFilter("id", FilterOperator.EQ, NIL_UUID),)

    @pytest.mark.asyncio
    async def test_user_rule_filters_on_caller(self, engine):
        model = await engine.apply_rls_filters(model_for("ticket_messages"), "agent-2")
        assert model.filters == (QueryFilter("sender_id", FilterOperator.EQ, "agent-2"),)

    @pytest.mark.asyncio
    async def test_public_read_skips_filters_for_select(self, engine):
        model = await engine.apply_rls_filters(model_for("kb_articles"), None)
        assert model.filters == ()

    @pytest.mark.asyncio
    async def test_unruled_table_is_untouched(self, engine):
        model = await engine.apply_rls_filters(model_for("settings"), None)
        assert model.filters == ()


class TestWriteChecks:
    @pytest.mark.asyncio
    async def test_anonymous_insert_denied(self, engine):
        decision = await engine.can_insert("tickets", {"organization_id": "org-1"}, None)
        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_insert_into_other_org_denied(self, engine):
        rows = [{"organization_id": "org-1"}, {"organization_id": "org-2"}]
        decision = await engine.can_insert("tickets", rows, "agent-1")
        assert decision.allowed is False
        assert "organization_id" in decision.reason

    @pytest.mark.asyncio
    async def test_insert_as_self_allowed(self, engine):
        decision = await engine.can_insert("ticket_messages", {"sender_id": "agent-1"}, "agent-1")
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_unruled_table_writes_allowed(self, engine):
        assert (await engine.can_insert("settings", {"k": "v"}, None)).allowed is True
        assert (await engine.can_delete("settings", None)).allowed is True

    @pytest.mark.asyncio
    async def test_update_cannot_reassign_owner(self, engine):
        decision = await engine.can_update("tickets", {"organization_id": "org-2"}, "agent-1")
        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_secure_returns_denial_for_refused_write(self, engine):
        outcome = await engine.secure(model_for("tickets", insert={"title": "x"}), None)
        assert isinstance(outcome, SecurityDenialError)
        assert outcome.operation == "insert"

    @pytest.mark.asyncio
    async def test_secure_filters_allowed_update(self, engine):
        outcome = await engine.secure(model_for("tickets", update={"status": "x"}), "agent-1")
        assert outcome.filters[-1] == QueryFilter("organization_id", FilterOperator.EQ, "org-1")


class TestSecuredSQLite:
    """Tenant isolation end-to-end on an embedded backend."""

    @pytest.fixture
    async def secured(self):
        provider = await create_sqlite(security_policy=default_helpdesk_policy())
        unsecured = provider.execute_unsecured
        rows = make_tickets(3) + make_tickets(2, start=4, organization_id="org-2")
        await QueryBuilder("tickets", unsecured).insert(rows).execute()
        await QueryBuilder("profiles", unsecured).insert(
            [
                {"id": "agent-1", "email": "a@example.com", "organization_id": "org-1"},
                {"id": "agent-2", "email": "b@example.com", "organization_id": "org-2"},
            ]
        ).execute()
        yield provider
        await provider.close()

    @pytest.mark.asyncio
    async def test_anonymous_read_returns_no_rows(self, secured):
        result = await secured.from_("tickets").select("*").execute()
        assert result.error is None
        assert result.data == []

    @pytest.mark.asyncio
    async def test_agent_sees_only_own_org(self, secured):
        secured.auth.sign_in_as("agent-2")
        result = await secured.from_("tickets").select("id").order("id").execute()
        assert [row["id"] for row in result.data] == [4, 5]

    @pytest.mark.asyncio
    async def test_update_only_touches_own_org(self, secured):
        secured.auth.sign_in_as("agent-1")
        await secured.from_("tickets").update({"status": "pending"}).gt("id", 0).execute()

        rows = await QueryBuilder("tickets", secured.execute_unsecured).select(
            "id, status"
        ).order("id").execute()
        pending = [row["id"] for row in rows.data if row["status"] == "pending"]
        assert pending == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_insert_into_other_org_is_denied(self, secured):
        secured.auth.sign_in_as("agent-1")
        result = await secured.from_("tickets").insert(
            {"id": 10, "title": "x", "organization_id": "org-2"}
        ).execute()
        assert isinstance(result.error, SecurityDenialError)

    @pytest.mark.asyncio
    async def test_sign_out_closes_access(self, secured):
        secured.auth.sign_in_as("agent-1")
        await secured.auth.sign_out()
        result = await secured.from_("tickets").select("*").execute()
        assert result.data == []
