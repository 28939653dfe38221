from __future__ import annotations

import json

from plot_allocation.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_every_collection():
    schema = generate_logical_schema()

    assert set(schema) == {
        "plot_users",
        "plots",
        "plot_transactions",
        "plot_idempotency_keys",
        "plot_ledger",
    }
    assert schema["plots"]["unique"] == ["position_key"]
    assert schema["plots"]["properties"]["position"]["type"] == "object"
    assert schema["plot_idempotency_keys"]["primary_key"] == "key"
    assert schema["plot_users"]["properties"]["free_squares_used"]["type"] == "integer"


def test_sql_ddl_has_unique_position_index():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "plots"' in ddl
    assert 'CREATE UNIQUE INDEX IF NOT EXISTS "ux_plots_position_key" ON "plots" ("position_key");' in ddl
    assert '"metadata" JSONB' in ddl


def test_nosql_schema_lists_unique_indexes():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))

    assert rendered["plot_transactions"]["indexes"] == [
        {"keys": {"transaction_id": 1}, "unique": True}
    ]


def test_cli_prints_schema(capsys):
    main(["--backend", "sql", "--dialect", "mysql"])

    out = capsys.readouterr().out
    assert '"plot_ledger"' in out
    assert "JSON NULL" in out
