from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.account import Account
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.processed_event import ProcessedEvent
from .models.transaction import Transaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    Transaction,
    ProcessedEvent,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Render CREATE TABLE statements plus the unique and secondary indexes
    the ledger relies on (external reference uniqueness above all).
    """
    statements: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in spec.get("required", []) or field_name == pk else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n")

        for index in spec.get("indexes", []):
            statements.append(_render_index(table_name, index, dialect) + "\n")
    return "\n".join(statements)


def _render_index(table_name: str, index: Dict[str, Any], dialect: str) -> str:
    unique = "UNIQUE " if index["unique"] else ""
    cols = ", ".join(f'"{f}"' for f in index["fields"])
    ddl = f'CREATE {unique}INDEX IF NOT EXISTS "{table_name}_{index["name"]}" ON "{table_name}" ({cols})'
    if index["partial"] and dialect == "postgres":
        ddl += " WHERE " + " AND ".join(f'"{f}" IS NOT NULL' for f in index["fields"])
    return ddl + ";"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for document databases like MongoDB.
    """
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
    if logical_type in {"object", "array"} and dialect == "postgres":
        return "JSONB"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the points ledger."
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
    args = parser.parse_args()

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
