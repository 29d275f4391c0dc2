"""Tests for the SQL compiler across dialects."""

import pytest

from helpdesk_storage.exceptions import InvalidIdentifierError, QueryExecutionError
from helpdesk_storage.query import QueryBuilder, QueryResult, SQLCompiler


async def _noop(model):
    return QueryResult.success([])


def q(table: str = "tickets") -> QueryBuilder:
    return QueryBuilder(table, _noop)


class TestSelect:
    def test_sqlite_select_with_filters_order_and_limit(self):
        model = q().select("id, title").eq("status", "open").order("id").limit(10).to_model()
        compiled = SQLCompiler("sqlite").compile(model)
        assert compiled.sql == (
            'SELECT "id", "title" FROM "tickets" WHERE "status" = ? ORDER BY "id" ASC LIMIT 10'
        )
        assert compiled.params == ["open"]

    def test_mysql_uses_backticks_and_percent_placeholders(self):
        model = q().eq("status", "open").to_model()
        compiled = SQLCompiler("mysql").compile(model)
        assert compiled.sql == "SELECT * FROM `tickets` WHERE `status` = %s"

    def test_range_becomes_limit_offset(self):
        compiled = SQLCompiler("sqlite").compile(q().range(10, 19).to_model())
        assert compiled.sql.endswith("LIMIT 10 OFFSET 10")

    def test_limit_wins_over_range(self):
        compiled = SQLCompiler("sqlite").compile(q().range(10, 19).limit(3).to_model())
        assert compiled.sql.endswith("LIMIT 3")
        assert "OFFSET" not in compiled.sql

    def test_empty_in_matches_nothing(self):
        compiled = SQLCompiler("sqlite").compile(q().in_("id", []).to_model())
        assert "1 = 0" in compiled.sql

    def test_is_null(self):
        compiled = SQLCompiler("duckdb").compile(q().is_("organization_id", None).to_model())
        assert compiled.sql.endswith('"organization_id" IS NULL')
        assert compiled.params == []


class TestCaseSensitivity:
    def test_ilike_lowers_both_sides_without_native_ilike(self):
        compiled = SQLCompiler("sqlite").compile(q().ilike("title", "%VPN%").to_model())
        assert 'LOWER("title") LIKE LOWER(?)' in compiled.sql

    def test_ilike_is_native_on_duckdb(self):
        compiled = SQLCompiler("duckdb").compile(q().ilike("title", "%VPN%").to_model())
        assert '"title" ILIKE ?' in compiled.sql

    def test_mysql_like_is_binary(self):
        compiled = SQLCompiler("mysql").compile(q().like("title", "VPN%").to_model())
        assert "CAST(`title` AS BINARY) LIKE CAST(%s AS BINARY)" in compiled.sql


class TestWrites:
    def test_insert_uses_union_of_keys(self):
        model = q().insert([{"title": "a"}, {"title": "b", "priority": 2}]).to_model()
        compiled = SQLCompiler("sqlite").compile(model)
        assert compiled.sql.startswith('INSERT INTO "tickets" ("title", "priority") VALUES')
        assert compiled.params == ["a", None, "b", 2]
        assert compiled.sql.endswith("RETURNING *")

    def test_mysql_insert_has_no_returning(self):
        compiled = SQLCompiler("mysql").compile(q().insert({"title": "a"}).to_model())
        assert "RETURNING" not in compiled.sql
        assert compiled.returns_rows is False

    def test_lists_bind_as_json_text_on_sqlite(self):
        compiled = SQLCompiler("sqlite").compile(q().insert({"tags": ["a", "b"]}).to_model())
        assert compiled.params == ['["a", "b"]']

    def test_lists_bind_natively_on_duckdb(self):
        compiled = SQLCompiler("duckdb").compile(q().insert({"tags": ["a", "b"]}).to_model())
        assert compiled.params == [["a", "b"]]

    def test_unfiltered_update_refused(self):
        with pytest.raises(QueryExecutionError):
            SQLCompiler("sqlite").compile(q().update({"status": "closed"}).to_model())

    def test_unfiltered_delete_refused(self):
        with pytest.raises(QueryExecutionError):
            SQLCompiler("sqlite").compile(q().delete().to_model())

    def test_empty_insert_refused(self):
        with pytest.raises(QueryExecutionError):
            SQLCompiler("sqlite").compile(q().insert([]).to_model())


class TestIdentifiers:
    def test_schema_qualified_table(self):
        compiled = SQLCompiler("postgres").compile(q("information_schema.columns").to_model())
        assert compiled.sql == 'SELECT * FROM "information_schema"."columns"'

    def test_injection_in_column_rejected(self):
        model = q().eq('status"; DROP TABLE tickets; --', "x").to_model()
        with pytest.raises(InvalidIdentifierError):
            SQLCompiler("sqlite").compile(model)

    def test_unknown_dialect(self):
        with pytest.raises(ValueError):
            SQLCompiler("oracle")


class TestCount:
    def test_count_ignores_pagination(self):
        model = q().select("*", count="exact").eq("status", "open").limit(5).to_model()
        compiled = SQLCompiler("sqlite").compile_count(model)
        assert compiled.sql == 'SELECT COUNT(*) AS count FROM "tickets" WHERE "status" = ?'
