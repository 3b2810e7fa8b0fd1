from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.account import AccountRecord
from .models.audit import AuditEntry
from .models.base import DBSerializableModel
from .models.grants import Ad, AdImpression, CollectionCooldown
from .models.redeem import RedeemCode
from .models.transaction import Transaction


logger = logging.getLogger(__name__)

MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    AccountRecord,
    Transaction,
    RedeemCode,
    CollectionCooldown,
    Ad,
    AdImpression,
    AuditEntry,
]

# Logical type -> column type; anything unlisted is stored as text
SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "BIGINT",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "datetime": "TIMESTAMPTZ",
        "date": "DATE",
        "object": "JSONB",
        "array": "JSONB",
    },
    "mysql": {
        "integer": "BIGINT",
        "number": "DOUBLE",
        "boolean": "BOOLEAN",
        "datetime": "TIMESTAMP",
        "date": "DATE",
        "object": "JSON",
        "array": "JSON",
    },
}


def generate_logical_schema(collections: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """
    Logical description of every persisted ledger collection, keyed by
    collection name. Both renderers below work from this dict only.
    """
    wanted = set(collections) if collections else None
    return {
        model.collection_name: model.db_schema()
        for model in MODEL_REGISTRY
        if wanted is None or model.collection_name in wanted
    }


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """`CREATE TABLE` statements, one per collection."""
    if dialect not in SQL_TYPES:
        raise ValueError(f"unsupported SQL dialect {dialect!r}")
    return "\n".join(_table_ddl(name, table, SQL_TYPES[dialect]) for name, table in schema.items())


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    JSON for document stores: a `$jsonSchema` validator of the required
    fields plus the unique indexes the ledger relies on.
    """
    collections = {}
    for name, table in schema.items():
        collections[name] = {
            "key": table["primary_key"],
            "validator": {
                "$jsonSchema": {"bsonType": "object", "required": table["required"]}
            },
            "indexes": [
                {"keys": {f: 1 for f in group}, "unique": True}
                for group in table["unique_together"]
            ],
            "fields": table["properties"],
        }
    return json.dumps(collections, indent=2, default=str)


def _table_ddl(name: str, table: Dict[str, Any], types: Dict[str, str]) -> str:
    props: Dict[str, Any] = table["properties"]
    required = set(table["required"])
    pk = table["primary_key"] or "id"

    columns: List[str] = []
    if pk not in props:
        # Computed keys such as "user_id:sequence" get a column of their own
        columns.append(f'"{pk}" TEXT NOT NULL')
    for field_name, meta in props.items():
        sql_type = types.get(meta["type"], "TEXT")
        columns.append(f'"{field_name}" {sql_type} {"NOT NULL" if field_name in required else "NULL"}')
    columns.append(f'PRIMARY KEY ("{pk}")')
    for group in table["unique_together"]:
        columns.append("UNIQUE (" + ", ".join(f'"{c}"' for c in group) + ")")

    body = ",\n".join("    " + c for c in columns)
    return f'CREATE TABLE IF NOT EXISTS "{name}" (\n{body}\n);\n'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credit-ledger-schema",
        description="Render the credit ledger storage layout as SQL DDL or document-store JSON.",
    )
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", choices=sorted(SQL_TYPES), default="postgres")
    parser.add_argument(
        "--only",
        action="append",
        metavar="COLLECTION",
        help="Render just this collection (repeatable).",
    )
    parser.add_argument("--output", type=Path, help="Write to a file instead of stdout.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    schema = generate_logical_schema(args.only)
    unknown = set(args.only or ()) - set(schema)
    if unknown:
        print(f"unknown collection(s): {', '.join(sorted(unknown))}", file=sys.stderr)
        return 2

    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output is None:
        print(rendered)
    else:
        args.output.write_text(rendered, encoding="utf-8")
        logger.info("Wrote %s schema for %d collections to %s", args.backend, len(schema), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
