"""
Atomic swap loader for the Redshift warehouse.

One transaction per table:

    1. DROP TABLE IF EXISTS <target>_updating CASCADE   (stale previous generation)
    2. ALTER TABLE <target> RENAME TO <target>_updating (skipped on first run)
    3. CREATE TABLE <target> (...)
    4. COPY <target> FROM 's3://bucket/key' ... GZIP
    5. COMMIT

Readers see the old <target> until the commit. Any failure rolls the whole
transaction back, restoring <target> and any pre-existing <target>_updating.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from config import FIELD_DELIMITER
from replica_etl.exceptions import LoadError
from replica_etl.schema import TableDescriptor, quote_ident, quote_literal

logger = logging.getLogger(__name__)

UPDATING_SUFFIX = "_updating"

TABLE_EXISTS_SQL = """
    SELECT 1
    FROM information_schema.tables
    WHERE table_schema = :schema
      AND table_name = :table
"""


@dataclass
class LoadResult:
    table: str
    rows_loaded: Optional[int] = None
    previous_generation: bool = False
    truncating_columns: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


class AtomicSwapLoader:
    """
    Replaces a destination table's contents without exposing a half-loaded table.

    Args:
        engine: SQLAlchemy engine for the warehouse.
        schema: Destination schema.
        bucket: Bucket holding the exported objects.
        authorization: COPY authorization clause (CREDENTIALS or IAM_ROLE);
            never logged.
        delimiter: Field delimiter of the exported text.
        truncate_columns: Pass TRUNCATECOLUMNS so over-wide values are cut
            to the column width instead of failing the load.
    """

    def __init__(
        self,
        engine,
        schema: str,
        bucket: str,
        authorization: str,
        delimiter: str = FIELD_DELIMITER,
        truncate_columns: bool = True,
    ) -> None:
        self.engine = engine
        self.schema = schema
        self.bucket = bucket
        self._authorization = authorization
        self.delimiter = delimiter
        self.truncate_columns = truncate_columns

    # ------------------------------------------------------------------ #
    # SQL builders
    # ------------------------------------------------------------------ #
    def qualified(self, name: str) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(name)}"

    def create_table_sql(self, table: TableDescriptor, if_not_exists: bool = False) -> str:
        clause = "IF NOT EXISTS " if if_not_exists else ""
        return (
            f"CREATE TABLE {clause}{self.qualified(table.target_table_name)} "
            f"({table.columns_for_create()})"
        )

    def copy_sql(self, table: TableDescriptor, key: str, redact: bool = False) -> str:
        authorization = "<redacted>" if redact else self._authorization
        options = ["GZIP"]
        if self.truncate_columns:
            options.append("TRUNCATECOLUMNS")
        options.append("ESCAPE")
        options.append(f"DELIMITER AS {quote_literal(self.delimiter)}")
        source = quote_literal(f"s3://{self.bucket}/{key}")
        return (
            f"COPY {self.qualified(table.target_table_name)} FROM {source} "
            f"{authorization} {' '.join(options)}"
        )

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #
    def ensure_table(self, table: TableDescriptor) -> None:
        """Create the destination table if it does not exist yet."""
        try:
            with self.engine.begin() as conn:
                conn.exec_driver_sql(self.create_table_sql(table, if_not_exists=True))
        except SQLAlchemyError as exc:
            raise LoadError(
                f"Could not create destination table: {_reason(exc)}",
                table=table.target_table_name,
            ) from _cause(exc)

    def load(self, table: TableDescriptor, key: str) -> LoadResult:
        """Swap ``table``'s destination contents for the object at ``key``."""
        target = table.target_table_name
        updating = target + UPDATING_SUFFIX
        result = LoadResult(table=target, truncating_columns=table.truncating_columns())

        if self.truncate_columns and result.truncating_columns:
            logger.warning(
                "%s: over-wide values in %s will be truncated to the destination width",
                target, ", ".join(result.truncating_columns),
            )

        logger.info("Importing %s", target)
        started = time.perf_counter()
        try:
            with self.engine.begin() as conn:
                conn.exec_driver_sql(f"DROP TABLE IF EXISTS {self.qualified(updating)} CASCADE")

                if self._table_exists(conn, target):
                    conn.exec_driver_sql(
                        f"ALTER TABLE {self.qualified(target)} RENAME TO {quote_ident(updating)}"
                    )
                    result.previous_generation = True

                conn.exec_driver_sql(self.create_table_sql(table))
                conn.exec_driver_sql(self.copy_sql(table, key))
                result.rows_loaded = conn.execute(text("SELECT pg_last_copy_count()")).scalar()
        except SQLAlchemyError as exc:
            logger.error("%s: swap rolled back, previous data kept", target)
            raise LoadError(f"Swap load failed: {_reason(exc)}", table=target) from _cause(exc)

        result.elapsed_seconds = time.perf_counter() - started
        logger.info(
            "%s: loaded %s row(s) in %.1fs", target,
            "?" if result.rows_loaded is None else f"{result.rows_loaded:,}",
            result.elapsed_seconds,
        )
        return result

    def _table_exists(self, conn, name: str) -> bool:
        row = conn.execute(
            text(TABLE_EXISTS_SQL), {"schema": self.schema, "table": name}
        ).fetchone()
        return row is not None


def _reason(exc: SQLAlchemyError) -> str:
    """Driver message without the SQL text (COPY statements carry credentials)."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).strip()
    return type(exc).__name__


def _cause(exc: SQLAlchemyError) -> BaseException:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return exc.orig
    return exc
