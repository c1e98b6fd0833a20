"""
Offline schema generation for the ledger collections.

    credit-ledger-schema --backend sql --dialect postgres
    credit-ledger-schema --backend nosql --output schema.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from .models.account import UserCreditAccount
from .models.base import DBSerializableModel
from .models.credits import CreditCostEntry
from .models.events import ProcessedEvent
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.subscription import AppSubscription, CustomerLink
from .models.transaction import CreditTransaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    UserCreditAccount,
    CreditTransaction,
    CreditCostEntry,
    AppSubscription,
    ProcessedEvent,
    CustomerLink,
    NotificationEvent,
    LedgerEntry,
]

# Secondary indexes: (collection, columns, unique)
INDEXES: List[Tuple[str, Tuple[str, ...], bool]] = [
    (CreditTransaction.collection_name, ("user_id", "ledger_seq", "entry_index"), False),
    (CreditCostEntry.collection_name, ("app_key", "operation"), True),
    (AppSubscription.collection_name, ("user_id", "app_key"), True),
    (UserCreditAccount.collection_name, ("trial_expires_at",), False),
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic schema for every registered model; the SQL and NoSQL
    renderers below both work from this.
    """
    schema = {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}
    for collection, columns, unique in INDEXES:
        schema[collection].setdefault("indexes", []).append(
            {"columns": list(columns), "unique": unique}
        )
    return schema


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    statements: List[str] = []
    for table_name, spec in schema.items():
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in spec["properties"].items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NULL" if meta.get("nullable") or field_name not in spec.get("required", []) else "NOT NULL"
            if field_name == pk:
                nullable = "NOT NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for index in spec.get("indexes", []):
            cols = index["columns"]
            name = f"ix_{table_name}_{'_'.join(cols)}"
            unique = "UNIQUE " if index["unique"] else ""
            quoted = ", ".join(f'"{c}"' for c in cols)
            statements.append(f'CREATE {unique}INDEX IF NOT EXISTS "{name}" ON "{table_name}" ({quoted});\n')
    return "\n".join(statements)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON description usable for MongoDB validators and index setup."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate store schemas for the credit ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write to this file instead of stdout.",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output is not None:
        args.output.write_text(rendered, encoding="utf-8")
    else:
        sys.stdout.write(rendered + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
