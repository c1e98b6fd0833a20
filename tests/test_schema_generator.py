from __future__ import annotations

import json

from credit_ledger.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_every_collection():
    schema = generate_logical_schema()

    assert set(schema) == {
        "user_credits",
        "credit_transactions",
        "app_credit_config",
        "app_subscriptions",
        "stripe_events",
        "customer_links",
        "credit_notifications",
        "credit_ledger",
    }
    accounts = schema["user_credits"]
    assert accounts["primary_key"] == "user_id"
    assert accounts["properties"]["subscription_cap"]["type"] == "integer"
    assert accounts["properties"]["trial_expires_at"]["nullable"] is True
    assert {"columns": ["app_key", "operation"], "unique": True} in schema["app_credit_config"]["indexes"]


def test_postgres_ddl():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="postgres")

    assert 'CREATE TABLE IF NOT EXISTS "user_credits"' in ddl
    assert '"user_id" TEXT NOT NULL' in ddl
    assert '"trial_expires_at" TIMESTAMPTZ NULL' in ddl
    assert '"details" JSONB' in ddl
    assert 'PRIMARY KEY ("customer_id")' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "ix_app_subscriptions_user_id_app_key" '
        'ON "app_subscriptions" ("user_id", "app_key");'
    ) in ddl


def test_generic_dialect_types():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="mysql")

    assert "TIMESTAMPTZ" not in ddl
    assert '"trial_expires_at" TIMESTAMP NULL' in ddl


def test_cli_writes_nosql_schema(tmp_path):
    output = tmp_path / "schema.json"

    assert main(["--backend", "nosql", "--output", str(output)]) == 0

    written = json.loads(output.read_text(encoding="utf-8"))
    assert written["stripe_events"]["primary_key"] == "id"
    assert json.loads(render_nosql_schema(generate_logical_schema())).keys() == written.keys()


def test_cli_prints_sql(capsys):
    assert main(["--backend", "sql"]) == 0

    assert 'CREATE TABLE IF NOT EXISTS "credit_transactions"' in capsys.readouterr().out
