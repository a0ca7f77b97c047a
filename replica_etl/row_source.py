"""
Row stream source: ``COPY (SELECT ...) TO STDOUT`` against the source database.

One pooled DBAPI connection is held for the whole run and reused table after
table. ``rows()`` is lazy: psycopg hands back one COPY data block at a time,
so a table is never buffered in memory. After each table the caller must
``reset()`` the source so the next table starts on a clean connection.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

import psycopg

from replica_etl.exceptions import SourceReadError

logger = logging.getLogger(__name__)


class RowStreamSource:
    """
    Streams raw delimited rows out of the source database.

    Usage:
        with RowStreamSource(engine) as source:
            for table in tables:
                try:
                    for row in source.rows(table.copy_command("|")):
                        ...
                finally:
                    source.reset()
    """

    def __init__(self, engine) -> None:
        self.engine = engine
        self._connection = None

    # -- connection lifecycle -----------------------------------------------

    def open(self) -> None:
        if self._connection is None:
            self._connection = self.engine.raw_connection()

    def close(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None

    def reset(self) -> None:
        """
        End the read transaction so the connection can serve the next table.

        A connection that cannot even roll back is invalidated and replaced
        by a fresh one from the pool.
        """
        if self._connection is None:
            return
        try:
            self._connection.rollback()
        except psycopg.Error as exc:
            logger.warning("Source connection unusable after rollback (%s); reconnecting", exc)
            self._connection.invalidate()
            self._connection = None
            self.open()

    def __enter__(self) -> "RowStreamSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
        return None

    # -- streaming ----------------------------------------------------------

    def rows(self, copy_sql: str, table: Optional[str] = None) -> Iterator[bytes]:
        """
        Yield raw row bytes produced by ``copy_sql`` until the stream is exhausted.

        Raises:
            SourceReadError: on any database error while the COPY is running.
        """
        self.open()
        cursor = self._connection.cursor()
        try:
            with cursor.copy(copy_sql) as copy:
                for data in copy:
                    yield bytes(data)
        except psycopg.Error as exc:
            raise SourceReadError(f"COPY from source failed: {exc}", table=table) from exc
        finally:
            cursor.close()
