from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .descriptor import ConnectionDescriptor


@dataclass(frozen=True)
class ColumnInfo:
    column_name: str
    data_type: str
    nullable: bool = True
    default_expr: Optional[str] = None
    char_max_length: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "ColumnInfo":
        length = row["character_maximum_length"]
        return cls(
            column_name=str(row["column_name"]),
            data_type=str(row["data_type"]),
            nullable=str(row["is_nullable"] or "YES").upper() == "YES",
            default_expr=row["column_default"],
            char_max_length=int(length) if length is not None else None,
        )


@dataclass
class SchemaSnapshot:
    schema_name: str
    tables: Dict[str, List[ColumnInfo]] = field(default_factory=dict)

    def has_table(self, table: str) -> bool:
        return table in self.tables

    def column_names(self, table: str) -> set[str]:
        return {c.column_name for c in self.tables.get(table, [])}


@dataclass
class Tenant:
    """A virtual store row from the global ``virtual_stores`` table."""

    id: int
    name: str
    slug: str
    database_url: str
    is_active: bool = True
    phone_number_id: Optional[str] = None

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor.parse(self.database_url)

    @property
    def schema_name(self) -> Optional[str]:
        return self.descriptor.schema_name

    @classmethod
    def from_row(cls, row) -> "Tenant":
        return cls(
            id=int(row["id"]),
            name=str(row["name"] or ""),
            slug=str(row["slug"] or ""),
            database_url=str(row["database_url"] or ""),
            is_active=bool(row["is_active"]) if row["is_active"] is not None else True,
            phone_number_id=row["phone_number_id"],
        )


@dataclass
class MigrationSummary:
    total_tables: int = 0
    migrated_successfully: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalTables": self.total_tables,
            "migratedSuccessfully": self.migrated_successfully,
            "errors": self.errors,
        }


@dataclass
class MigrationResult:
    store_id: int
    store_name: str
    schema_name: str
    success: bool = False
    migrated_tables: List[str] = field(default_factory=list)
    skipped_tables: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    descriptor_updated: bool = False
    summary: MigrationSummary = field(default_factory=MigrationSummary)

    def record_migrated(self, table: str, rows: int) -> None:
        self.migrated_tables.append(table)
        self.row_counts[table] = int(rows)
        self.summary.migrated_successfully += 1

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        self.summary.errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "storeId": self.store_id,
            "storeName": self.store_name,
            "schemaName": self.schema_name,
            "migratedTables": list(self.migrated_tables),
            "skippedTables": list(self.skipped_tables),
            "errors": list(self.errors),
            "rowCounts": dict(self.row_counts),
            "cancelled": self.cancelled,
            "descriptorUpdated": self.descriptor_updated,
            "summary": self.summary.to_dict(),
        }


@dataclass
class SyncReport:
    schemas_processed: int = 0
    tables_created: int = 0
    columns_added: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    def merge(self, other: "SyncReport") -> None:
        self.schemas_processed += other.schemas_processed
        self.tables_created += other.tables_created
        self.columns_added += other.columns_added
        self.errors.extend(other.errors)
        self.cancelled = self.cancelled or other.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemasProcessed": self.schemas_processed,
            "tablesCreated": self.tables_created,
            "columnsAdded": self.columns_added,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }
