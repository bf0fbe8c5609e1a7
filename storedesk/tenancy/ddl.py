"""SQL synthesis for schema reconciliation and tenant carve-out."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from .errors import InvalidSchemaNameError
from .models import ColumnInfo

# information_schema.columns.data_type -> DDL type.
TYPE_MAP = {
    "timestamp without time zone": "TIMESTAMP",
    "timestamp with time zone": "TIMESTAMPTZ",
    "boolean": "BOOLEAN",
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "numeric": "NUMERIC",
    "text": "TEXT",
    "json": "JSON",
    "jsonb": "JSONB",
}

VARCHAR_FALLBACK = "VARCHAR(255)"

# Conservative: lower-case identifiers only, max 63 bytes (NAMEDATALEN - 1).
_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def validate_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENT_RE.match(name):
        raise InvalidSchemaNameError(f"Invalid identifier: {name!r}")
    return name


def quote_ident(name: str) -> str:
    return '"' + validate_identifier(name) + '"'


def qualified(schema: str, table: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


def map_data_type(column: ColumnInfo, *, varchar_fallback: Optional[str] = None) -> str:
    """Map a catalog type to DDL. Unmapped types pass through unchanged."""
    if column.data_type == "character varying":
        if column.char_max_length:
            return f"VARCHAR({int(column.char_max_length)})"
        return varchar_fallback or "VARCHAR"
    return TYPE_MAP.get(column.data_type, column.data_type)


def column_definition(column: ColumnInfo, *, varchar_fallback: Optional[str] = None) -> str:
    parts = [quote_ident(column.column_name), map_data_type(column, varchar_fallback=varchar_fallback)]
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default_expr is not None:
        # Defaults are copied verbatim from the reference schema.
        parts.append(f"DEFAULT {column.default_expr}")
    return " ".join(parts)


def create_table_sql(schema: str, table: str, columns: Iterable[ColumnInfo]) -> str:
    cols = list(columns)
    if not cols:
        raise ValueError(f"No columns to create {schema}.{table}")
    body = ", ".join(column_definition(c) for c in cols)
    return f"CREATE TABLE IF NOT EXISTS {qualified(schema, table)} ({body})"


def add_column_sql(schema: str, table: str, column: ColumnInfo) -> str:
    definition = column_definition(column, varchar_fallback=VARCHAR_FALLBACK)
    return f"ALTER TABLE {qualified(schema, table)} ADD COLUMN IF NOT EXISTS {definition}"


def create_schema_sql(schema: str) -> str:
    return f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}"


def clone_table_sql(source_schema: str, target_schema: str, table: str) -> str:
    """Clone columns, constraints, indexes and defaults of a reference table."""
    return (
        f"CREATE TABLE {qualified(target_schema, table)} "
        f"(LIKE {qualified(source_schema, table)} INCLUDING ALL)"
    )


def copy_rows_sql(source_schema: str, target_schema: str, table: str, discriminator: Optional[str] = None) -> str:
    sql = f"INSERT INTO {qualified(target_schema, table)} SELECT * FROM {qualified(source_schema, table)}"
    if discriminator:
        sql += f" WHERE {quote_ident(discriminator)} = $1"
    return sql


def affected_rows(status: str | None) -> int:
    """asyncpg returns command tags like "INSERT 0 12"."""
    try:
        return int(str(status or "").split()[-1])
    except (ValueError, IndexError):
        return 0
