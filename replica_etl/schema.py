"""
Table and column descriptors for the replica pipeline, plus discovery of
the source tables from ``information_schema``.

Column order is fixed at discovery time; the same tuple drives the export
SELECT list and the destination CREATE TABLE column list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import text

logger = logging.getLogger(__name__)

# Redshift limits
REDSHIFT_MAX_VARCHAR = 65535
REDSHIFT_MAX_CHAR = 4096
REDSHIFT_MAX_NUMERIC_PRECISION = 38

WIDE_VARCHAR = f"CHARACTER VARYING({REDSHIFT_MAX_VARCHAR})"
UNCONSTRAINED_NUMERIC = "NUMERIC(38,10)"

# Source types Redshift cannot store natively. They are cast on export so the
# text that lands in S3 matches the destination column type.
CAST_TYPES_FOR_COPY = {
    "text": WIDE_VARCHAR,
    "json": WIDE_VARCHAR,
    "jsonb": WIDE_VARCHAR,
    "xml": WIDE_VARCHAR,
    "bytea": WIDE_VARCHAR,
    "oid": WIDE_VARCHAR,
    "interval": WIDE_VARCHAR,
    "inet": WIDE_VARCHAR,
    "cidr": WIDE_VARCHAR,
    "macaddr": WIDE_VARCHAR,
    "tsvector": WIDE_VARCHAR,
    "ARRAY": WIDE_VARCHAR,
    "USER-DEFINED": WIDE_VARCHAR,
    "uuid": "CHARACTER VARYING(36)",
    "money": "DECIMAL(19,2)",
}

BOOLEAN_EXPORT_TYPE = "CHAR(1)"

TABLES_SQL = """
    SELECT table_name, table_type
    FROM information_schema.tables
    WHERE table_schema = :schema
      AND table_type IN ('BASE TABLE', 'VIEW')
    ORDER BY table_name ASC
"""

COLUMNS_SQL = """
    SELECT
        column_name,
        data_type,
        is_nullable,
        character_maximum_length,
        numeric_precision,
        numeric_scale
    FROM information_schema.columns
    WHERE table_schema = :schema
      AND table_name = :table
    ORDER BY ordinal_position
"""


def quote_ident(name: str) -> str:
    """Double-quote an identifier, escaping embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Single-quote a string literal, escaping embedded quotes."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class ColumnDescriptor:
    """One source column and its two derived projections."""

    name: str
    data_type: str
    nullable: bool = True
    character_maximum_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None

    @property
    def target_type(self) -> str:
        """Warehouse type for this column. Pure function of the descriptor."""
        if self.data_type in CAST_TYPES_FOR_COPY:
            return CAST_TYPES_FOR_COPY[self.data_type]

        if self.data_type == "character varying":
            if self.character_maximum_length:
                return f"CHARACTER VARYING({min(self.character_maximum_length, REDSHIFT_MAX_VARCHAR)})"
            return WIDE_VARCHAR

        if self.data_type == "character":
            length = self.character_maximum_length or 1
            if length > REDSHIFT_MAX_CHAR:
                return f"CHARACTER VARYING({min(length, REDSHIFT_MAX_VARCHAR)})"
            return f"CHARACTER({length})"

        if self.data_type == "numeric":
            if self.numeric_precision and self.numeric_precision <= REDSHIFT_MAX_NUMERIC_PRECISION:
                return f"NUMERIC({self.numeric_precision},{self.numeric_scale or 0})"
            return UNCONSTRAINED_NUMERIC

        return self.data_type.upper()

    @property
    def may_truncate(self) -> bool:
        """True when the destination type is narrower than what the source allows."""
        if self.data_type in CAST_TYPES_FOR_COPY:
            return self.target_type == WIDE_VARCHAR
        if self.data_type == "character varying":
            return (self.character_maximum_length or REDSHIFT_MAX_VARCHAR + 1) > REDSHIFT_MAX_VARCHAR
        if self.data_type == "character":
            return (self.character_maximum_length or 1) > REDSHIFT_MAX_VARCHAR
        return False

    @property
    def copy_expression(self) -> str:
        """Expression used for this column in the export SELECT list."""
        quoted = quote_ident(self.name)
        if self.data_type == "boolean":
            return f"CAST({quoted} AS {BOOLEAN_EXPORT_TYPE}) AS {quoted}"
        if self.data_type in CAST_TYPES_FOR_COPY:
            return f"CAST({quoted} AS {self.target_type}) AS {quoted}"
        return quoted

    @property
    def definition(self) -> str:
        """Column definition for CREATE TABLE."""
        column = f"{quote_ident(self.name)} {self.target_type}"
        if not self.nullable:
            column += " NOT NULL"
        return column

    @classmethod
    def from_row(cls, row) -> "ColumnDescriptor":
        """Build from an ``information_schema.columns`` row (see COLUMNS_SQL)."""
        return cls(
            name=row.column_name,
            data_type=row.data_type,
            nullable=str(row.is_nullable).upper() != "NO",
            character_maximum_length=row.character_maximum_length,
            numeric_precision=row.numeric_precision,
            numeric_scale=row.numeric_scale,
        )


@dataclass(frozen=True)
class TableDescriptor:
    """A source relation and the destination table it is replicated into."""

    name: str
    columns: Tuple[ColumnDescriptor, ...]
    table_type: str = "BASE TABLE"
    source_schema: str = "public"

    def __post_init__(self) -> None:
        # Accept any sequence but freeze the order
        object.__setattr__(self, "columns", tuple(self.columns))

    def __str__(self) -> str:
        return self.name

    @property
    def target_table_name(self) -> str:
        if self.name.endswith("_view"):
            return self.name[: -len("_view")]
        return self.name

    @property
    def is_view(self) -> bool:
        return self.table_type == "VIEW"

    @property
    def qualified_source_name(self) -> str:
        return f"{quote_ident(self.source_schema)}.{quote_ident(self.name)}"

    def columns_for_create(self) -> str:
        return ", ".join(column.definition for column in self.columns)

    def columns_for_copy(self) -> str:
        return ", ".join(column.copy_expression for column in self.columns)

    def truncating_columns(self) -> List[str]:
        return [column.name for column in self.columns if column.may_truncate]

    def copy_command(self, delimiter: str) -> str:
        """COPY ... TO STDOUT statement streaming this table as delimited text."""
        return (
            f"COPY (SELECT {self.columns_for_copy()} FROM {self.qualified_source_name}) "
            f"TO STDOUT WITH DELIMITER {quote_literal(delimiter)}"
        )


def discover_tables(
    engine,
    schema: str = "public",
    exclude: Iterable[str] = (),
    only: Optional[Sequence[str]] = None,
) -> List[TableDescriptor]:
    """
    List the replicable relations in ``schema``.

    Base tables and views are returned in name order. Names starting with
    ``pg_`` and names in ``exclude`` are skipped; when ``only`` is given the
    result is restricted to those names.
    """
    excluded = set(exclude)
    wanted = set(only) if only else None
    tables: List[TableDescriptor] = []

    with engine.connect() as conn:
        for row in conn.execute(text(TABLES_SQL), {"schema": schema}).fetchall():
            name = row.table_name
            if name in excluded or name.startswith("pg_"):
                logger.debug("Skipping %s.%s", schema, name)
                continue
            if wanted is not None and name not in wanted:
                continue

            column_rows = conn.execute(
                text(COLUMNS_SQL), {"schema": schema, "table": name}
            ).fetchall()
            columns = tuple(ColumnDescriptor.from_row(col) for col in column_rows)
            if not columns:
                logger.warning("Table %s.%s has no visible columns, skipping", schema, name)
                continue

            tables.append(
                TableDescriptor(
                    name=name,
                    columns=columns,
                    table_type=row.table_type,
                    source_schema=schema,
                )
            )

    if wanted is not None:
        missing = wanted - {table.name for table in tables} - excluded
        for name in sorted(missing):
            logger.warning("Requested table %s not found in schema %s", name, schema)

    logger.info("Discovered %d table(s) in schema %s", len(tables), schema)
    return tables
