"""
Application-level row security for providers without native enforcement.

A SecurityPolicy maps tables to RLS rules. It is assembled once through
SecurityPolicyBuilder (the only mutation point; rules overwrite by table
name, there is no removal) and is immutable afterwards. Each provider
receives its policy at construction.

Authoritative layer per provider:
- sqlite, duckdb, postgres (proxy), mysql (proxy): this engine, in-process
- supabase: the backend's own row-level security; this engine is bypassed
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .exceptions import SecurityDenialError
from .query.builder import Executor, QueryBuilder
from .query.model import FilterOperator, QueryFilter, QueryModel, QueryOperation

logger = logging.getLogger(__name__)

# Matches no real row: injected when a caller may not see anything.
NIL_UUID = "00000000-0000-0000-0000-000000000000"

OrganizationResolver = Callable[[str], Awaitable[str | None]]


@dataclass(frozen=True)
class RLSRule:
    """Ownership columns for one table."""

    user_column: str | None = None
    org_column: str | None = None
    public_read: bool = False


@dataclass(frozen=True)
class AccessDecision:
    """Result of a write-permission check."""

    allowed: bool
    reason: str = ""


class SecurityPolicy:
    """Immutable table -> RLSRule mapping."""

    def __init__(self, rules: Mapping[str, RLSRule] | None = None):
        self._rules: Mapping[str, RLSRule] = MappingProxyType(dict(rules or {}))

    def rule_for(self, table: str) -> RLSRule | None:
        return self._rules.get(table)

    @property
    def rules(self) -> Mapping[str, RLSRule]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"SecurityPolicy(tables={sorted(self._rules)})"


class SecurityPolicyBuilder:
    """Collects RLS rules and freezes them into a SecurityPolicy."""

    def __init__(self) -> None:
        self._rules: dict[str, RLSRule] = {}

    def add_rls_rule(
        self,
        table: str,
        *,
        user_column: str | None = None,
        org_column: str | None = None,
        public_read: bool = False,
    ) -> SecurityPolicyBuilder:
        self._rules[table] = RLSRule(user_column, org_column, public_read)
        return self

    def build(self) -> SecurityPolicy:
        return SecurityPolicy(self._rules)


def default_helpdesk_policy() -> SecurityPolicy:
    """Tenant isolation for the helpdesk tables."""
    builder = SecurityPolicyBuilder()
    for table in (
        "tickets",
        "profiles",
        "audit_logs",
        "consent_records",
        "response_templates",
        "team_invitations",
    ):
        builder.add_rls_rule(table, org_column="organization_id")
    builder.add_rls_rule("ticket_messages", user_column="sender_id")
    # an organization row is visible to its own members: row id == caller's org
    builder.add_rls_rule("organizations", org_column="id")
    return builder.build()


class ProfileOrganizationResolver:
    """Looks up a caller's organization from their profile row.

    Queries through an executor that bypasses row security, so the lookup
    itself is never filtered.
    """

    def __init__(
        self,
        executor: Executor,
        table: str = "profiles",
        id_column: str = "id",
        org_column: str = "organization_id",
    ):
        self._executor = executor
        self.table = table
        self.id_column = id_column
        self.org_column = org_column

    async def __call__(self, user_id: str) -> str | None:
        model = (
            QueryBuilder(self.table, self._executor)
            .select(self.org_column)
            .eq(self.id_column, user_id)
            .maybe_single()
            .to_model()
        )
        result = await self._executor(model)
        if result.error is not None:
            logger.warning(f"Could not resolve organization for {user_id}: {result.error}")
            return None
        if not result.data:
            return None
        org_id = result.data.get(self.org_column)
        return str(org_id) if org_id is not None else None


class SecurityFilterEngine:
    """Injects mandatory ownership predicates and vets writes."""

    def __init__(self, policy: SecurityPolicy, org_resolver: OrganizationResolver | None = None):
        self.policy = policy
        self._org_resolver = org_resolver

    async def _resolve_org(self, caller_id: str) -> str | None:
        if self._org_resolver is None:
            return None
        return await self._org_resolver(caller_id)

    async def apply_rls_filters(self, model: QueryModel, caller_id: str | None) -> QueryModel:
        """Return the model with the table's ownership predicates appended.

        Fails closed by vacuous truth: when the caller may see nothing, an
        ``id = NIL_UUID`` predicate is added so the query returns zero rows
        instead of erroring.
        """
        rule = self.policy.rule_for(model.table)
        if rule is None:
            return model
        if rule.public_read and model.operation is QueryOperation.SELECT:
            return model

        if not caller_id:
            return model.with_filters(QueryFilter("id", FilterOperator.EQ, NIL_UUID))

        extra: list[QueryFilter] = []
        if rule.user_column:
            extra.append(QueryFilter(rule.user_column, FilterOperator.EQ, caller_id))
        if rule.org_column:
            org_id = await self._resolve_org(caller_id)
            if org_id is None:
                logger.debug(f"No organization for {caller_id}; closing {model.table}")
                extra.append(QueryFilter("id", FilterOperator.EQ, NIL_UUID))
            else:
                extra.append(QueryFilter(rule.org_column, FilterOperator.EQ, org_id))
        return model.with_filters(*extra)

    async def can_insert(
        self,
        table: str,
        payload: dict[str, Any] | list[dict[str, Any]],
        caller_id: str | None,
    ) -> AccessDecision:
        rule = self.policy.rule_for(table)
        if rule is None:
            return AccessDecision(True)
        if not caller_id:
            return AccessDecision(False, "anonymous caller")

        rows = [payload] if isinstance(payload, dict) else list(payload)
        org_id = await self._resolve_org(caller_id) if rule.org_column else None
        if rule.org_column and org_id is None:
            return AccessDecision(False, "caller has no organization")

        for row in rows:
            if rule.user_column and str(row.get(rule.user_column)) != caller_id:
                return AccessDecision(False, f"{rule.user_column} must be the caller")
            if rule.org_column and str(row.get(rule.org_column)) != org_id:
                return AccessDecision(False, f"{rule.org_column} must be the caller's organization")
        return AccessDecision(True)

    async def can_update(
        self, table: str, payload: dict[str, Any], caller_id: str | None
    ) -> AccessDecision:
        """Ownership columns may not be reassigned away from the caller."""
        rule = self.policy.rule_for(table)
        if rule is None:
            return AccessDecision(True)
        if not caller_id:
            return AccessDecision(False, "anonymous caller")

        if rule.user_column and rule.user_column in payload:
            if str(payload[rule.user_column]) != caller_id:
                return AccessDecision(False, f"cannot reassign {rule.user_column}")
        if rule.org_column and rule.org_column in payload:
            org_id = await self._resolve_org(caller_id)
            if org_id is None or str(payload[rule.org_column]) != org_id:
                return AccessDecision(False, f"cannot reassign {rule.org_column}")
        return AccessDecision(True)

    async def can_delete(self, table: str, caller_id: str | None) -> AccessDecision:
        rule = self.policy.rule_for(table)
        if rule is None:
            return AccessDecision(True)
        if not caller_id:
            return AccessDecision(False, "anonymous caller")
        return AccessDecision(True)

    async def secure(
        self, model: QueryModel, caller_id: str | None
    ) -> QueryModel | SecurityDenialError:
        """Vet and filter a model before execution.

        Returns the (possibly augmented) model, or the denial for a refused write.
        """
        operation = model.operation
        if operation is QueryOperation.INSERT:
            decision = await self.can_insert(model.table, model.rows_to_insert(), caller_id)
        elif operation is QueryOperation.UPDATE:
            decision = await self.can_update(model.table, model.update_payload or {}, caller_id)
        elif operation is QueryOperation.DELETE:
            decision = await self.can_delete(model.table, caller_id)
        else:
            return await self.apply_rls_filters(model, caller_id)

        if not decision.allowed:
            logger.info(f"RLS denied {operation.value} on {model.table}: {decision.reason}")
            return SecurityDenialError(model.table, operation.value, decision.reason)
        if operation is QueryOperation.INSERT:
            return model
        return await self.apply_rls_filters(model, caller_id)
