"""
Pipeline driver: replicate source tables into the warehouse one at a time.

Per table:
    1. ensure the destination table exists (CREATE TABLE IF NOT EXISTS)
    2. stream COPY output -> gzip segments -> S3 multipart upload
    3. atomic swap load from the uploaded object

A failure in one table is logged, recorded in the run summary and the
driver moves on to the next table.
"""

from __future__ import annotations

import logging
import random
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from config import ReplicationConfig
from monitoring.metrics import MetricsEmitter
from replica_etl.compressor import ChunkedCompressor, ExportSegment
from replica_etl.exceptions import UploadSessionError
from replica_etl.multipart_upload import TRANSPORT_ERRORS, MultipartUploadCoordinator, UploadSession
from replica_etl.row_source import RowStreamSource
from replica_etl.schema import TableDescriptor, discover_tables
from replica_etl.swap_loader import AtomicSwapLoader, LoadResult
from utils.aws import copy_authorization, get_s3_client
from utils.db_connection import get_source_engine, get_warehouse_engine

logger = logging.getLogger(__name__)


@dataclass
class TableResult:
    """Outcome of one table's replication."""

    source: str
    destination: str
    key: str
    segments: int = 0
    bytes_uploaded: int = 0
    rows_loaded: Optional[int] = None
    truncating_columns: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    stage: str = "pending"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReplicationSummary:
    results: List[TableResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[TableResult]:
        return [result for result in self.results if result.ok]

    @property
    def failed(self) -> List[TableResult]:
        return [result for result in self.results if not result.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


class ReplicationPipeline:
    """
    Wires the row source, compressor, upload coordinator and swap loader
    together for a sequence of tables.

    The source connection is shared across tables and reset after each one,
    whether the table succeeded or not.
    """

    def __init__(
        self,
        config: ReplicationConfig,
        source: RowStreamSource,
        uploads: MultipartUploadCoordinator,
        loader: AtomicSwapLoader,
        compressor: Optional[ChunkedCompressor] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.uploads = uploads
        self.loader = loader
        self.compressor = compressor or ChunkedCompressor(
            threshold=config.segment_size, spool_dir=config.spool_dir
        )
        self.metrics = metrics or MetricsEmitter()

    def new_result(self, table: TableDescriptor) -> TableResult:
        return TableResult(
            source=table.name,
            destination=table.target_table_name,
            key=self.config.export_key(table.target_table_name),
        )

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #
    def copy_table(self, table: TableDescriptor, result: TableResult) -> None:
        """Export ``table`` to its object key as one multipart upload."""
        copy_sql = table.copy_command(self.config.delimiter)
        logger.info("Downloading %s", table)
        logger.debug("Export query: %s", copy_sql)

        with self.uploads.open_session(result.key) as session, \
                closing(self.source.rows(copy_sql, table=table.name)) as rows, \
                closing(self.compressor.segments(rows)) as segments:
            for segment in segments:
                self._upload_with_retry(session, segment, table)
                result.segments += 1
                result.bytes_uploaded += segment.compressed_size

    def import_table(self, table: TableDescriptor, result: TableResult) -> LoadResult:
        load = self.loader.load(table, result.key)
        result.rows_loaded = load.rows_loaded
        result.truncating_columns = load.truncating_columns
        return load

    def run_for_table(
        self, table: TableDescriptor, result: Optional[TableResult] = None, skip_load: bool = False
    ) -> TableResult:
        """
        Replicate one table. Errors propagate; ``result`` keeps whatever was
        recorded up to the failing stage.
        """
        result = result or self.new_result(table)
        try:
            if not skip_load:
                result.stage = "ensure"
                self.loader.ensure_table(table)

            result.stage = "export"
            self.copy_table(table, result)

            if not skip_load:
                result.stage = "load"
                self.import_table(table, result)
            result.stage = "done"
        finally:
            self.source.reset()
        return result

    def update_tables(
        self, tables: Iterable[TableDescriptor], skip_load: bool = False
    ) -> ReplicationSummary:
        summary = ReplicationSummary()
        for table in tables:
            result = self.new_result(table)
            started = time.perf_counter()
            try:
                self.run_for_table(table, result, skip_load=skip_load)
            except Exception as exc:  # pylint: disable=broad-except
                result.error = str(exc)
                result.elapsed_seconds = time.perf_counter() - started
                logger.exception("[%s] replication failed during %s", table, result.stage)
                self.metrics.emit_table_failed(
                    table=result.destination,
                    stage=result.stage,
                    error=result.error[:500],
                    duration_seconds=result.elapsed_seconds,
                )
            else:
                result.elapsed_seconds = time.perf_counter() - started
                logger.info(
                    "[%s] done: %d segment(s), %d bytes in %.1fs",
                    table, result.segments, result.bytes_uploaded, result.elapsed_seconds,
                )
                self.metrics.emit_table_loaded(
                    table=result.destination,
                    segments=result.segments,
                    bytes_uploaded=result.bytes_uploaded,
                    rows_loaded=result.rows_loaded,
                    duration_seconds=result.elapsed_seconds,
                    truncating_columns=result.truncating_columns,
                )
            summary.results.append(result)

        logger.info(
            "Replication finished: %d succeeded, %d failed",
            len(summary.succeeded), len(summary.failed),
        )
        return summary

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _upload_with_retry(
        self, session: UploadSession, segment: ExportSegment, table: TableDescriptor
    ) -> None:
        """Upload one part, retrying transport errors with exponential backoff."""
        base_delay = self.config.upload_retry_base_delay
        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                self.uploads.upload_part(session, segment)
            except TRANSPORT_ERRORS as exc:
                if attempt > self.config.upload_max_retries:
                    raise UploadSessionError(
                        f"Part {segment.part_number} failed after {attempt} attempt(s): {exc}",
                        bucket=session.bucket, key=session.key, upload_id=session.upload_id,
                    ) from exc
                wait = base_delay * (2 ** (attempt - 1))
                wait += random.uniform(0, base_delay)
                logger.warning(
                    "[%s] part %d upload failed (%s), retrying in %.1fs",
                    table, segment.part_number, type(exc).__name__, wait,
                )
                self.metrics.emit_retry_event(
                    table=table.target_table_name,
                    attempt=attempt,
                    wait_seconds=wait,
                    reason=f"{type(exc).__name__}: {str(exc)[:100]}",
                )
                time.sleep(wait)
                continue

            self.metrics.emit_segment_metrics(
                table=table.target_table_name,
                part_number=segment.part_number,
                uncompressed_bytes=segment.uncompressed_size,
                compressed_bytes=segment.compressed_size,
                duration_seconds=time.perf_counter() - started,
            )
            return


def replicate(
    config: ReplicationConfig,
    only: Optional[Sequence[str]] = None,
    exclude: Sequence[str] = (),
    skip_load: bool = False,
    dry_run: bool = False,
    metrics: Optional[MetricsEmitter] = None,
) -> ReplicationSummary:
    """
    Discover the source tables and replicate each into the warehouse.

    Engines are created for the run and disposed at the end; the source
    connection is acquired once and reused for every table.
    """
    source_engine = get_source_engine(config)
    warehouse_engine = None
    try:
        tables = discover_tables(
            source_engine,
            schema=config.source_schema,
            exclude=[*config.exclude_tables, *exclude],
            only=only,
        )

        if dry_run:
            preview = AtomicSwapLoader(
                None, config.target_schema, config.s3_bucket, authorization="",
                delimiter=config.delimiter, truncate_columns=config.truncate_columns,
            )
            for table in tables:
                logger.info("[%s] -> %s.%s", table, config.target_schema, table.target_table_name)
                logger.info("  export: %s", table.copy_command(config.delimiter))
                logger.info("  create: %s", preview.create_table_sql(table))
                key = config.export_key(table.target_table_name)
                logger.info("  load:   %s", preview.copy_sql(table, key, redact=True))
            return ReplicationSummary()

        authorization = "" if skip_load else copy_authorization(config)
        uploads = MultipartUploadCoordinator(get_s3_client(config), config.s3_bucket)
        warehouse_engine = get_warehouse_engine(config)
        loader = AtomicSwapLoader(
            warehouse_engine,
            config.target_schema,
            config.s3_bucket,
            authorization,
            delimiter=config.delimiter,
            truncate_columns=config.truncate_columns,
        )

        with RowStreamSource(source_engine) as source:
            pipeline = ReplicationPipeline(config, source, uploads, loader, metrics=metrics)
            return pipeline.update_tables(tables, skip_load=skip_load)
    finally:
        source_engine.dispose()
        if warehouse_engine is not None:
            warehouse_engine.dispose()
