from __future__ import annotations

import json

from points_ledger.schema_generator import generate_logical_schema, render_nosql_schema, render_sql_ddl


def test_logical_schema_covers_persisted_models():
    schema = generate_logical_schema()

    assert set(schema) == {"accounts", "point_transactions", "processed_events", "ledger_audit"}
    assert schema["processed_events"]["primary_key"] == "event_id"
    tx = schema["point_transactions"]
    assert tx["properties"]["amount"]["type"] == "integer"
    assert tx["properties"]["external_ref"]["nullable"] is True
    assert "balance" not in schema["accounts"]["properties"]


def test_sql_ddl_includes_unique_reference_index():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "point_transactions"' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "point_transactions_external_ref_uniq" '
        'ON "point_transactions" ("external_ref") WHERE "external_ref" IS NOT NULL;'
    ) in ddl
    assert '"account_id", "created_at", "id"' in ddl
    assert '"amount" BIGINT NOT NULL' in ddl
    assert '"details" JSONB' in ddl


def test_mysql_dialect_skips_partial_clause():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="mysql")

    assert "WHERE" not in ddl
    assert "TIMESTAMPTZ" not in ddl


def test_nosql_schema_is_json():
    data = json.loads(render_nosql_schema(generate_logical_schema()))

    indexes = data["accounts"]["indexes"]
    assert indexes == [
        {"name": "external_customer_ref_uniq", "fields": ["external_customer_ref"], "unique": True, "partial": True}
    ]
