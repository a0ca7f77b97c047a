"""
Structured metrics emission for the replica pipeline.

Primary goals:
- Emit JSON log lines for every significant checkpoint (segment upload, retries, table loads)
- Optionally push metrics to a Prometheus Pushgateway when configured
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry, Gauge, push_to_gateway

logger = logging.getLogger(__name__)


@dataclass
class MetricTags:
    """Key/value tags shared across emissions."""

    job_name: str
    environment: str = field(default_factory=lambda: os.getenv("ETL_ENVIRONMENT", "dev"))


class MetricsEmitter:
    """
    Emits structured metrics locally and (optionally) to Prometheus Pushgateway.
    """

    def __init__(
        self,
        tags: MetricTags | None = None,
        log_path: str | Path | None = None,
        pushgateway_url: str | None = None,
    ) -> None:
        self.tags = tags or MetricTags(job_name="pg_to_redshift_replica")
        self._log_path = Path(log_path or os.getenv("METRICS_LOG_PATH", "monitoring/metrics.log"))
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._prom_gateway = pushgateway_url or os.getenv("PROM_PUSHGATEWAY_URL")
        self._prom_job = os.getenv("PROM_PUSH_JOB_NAME", self.tags.job_name)

    @property
    def log_path(self) -> Path:
        return self._log_path

    def emit(
        self,
        metric_name: str,
        payload: Dict,
        *,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Write JSON line and optionally push to Prometheus."""
        event_time = timestamp or datetime.now(timezone.utc)
        record = {
            "metric": metric_name,
            "timestamp": event_time.isoformat(),
            "tags": self.tags.__dict__,
            "payload": payload,
        }
        try:
            with self._lock:
                with self._log_path.open("a", encoding="utf-8") as log_file:
                    log_file.write(json.dumps(record, default=str) + os.linesep)
        except OSError as exc:
            logger.warning("Could not write metric %s to %s: %s", metric_name, self._log_path, exc)

        try:
            self._maybe_push_to_prometheus(metric_name, payload, event_time)
        except OSError as exc:
            logger.warning("Could not push metric %s to %s: %s", metric_name, self._prom_gateway, exc)

    # ------------------------------------------------------------------ #
    # Convenience helpers
    # ------------------------------------------------------------------ #
    def emit_segment_metrics(
        self,
        *,
        table: str,
        part_number: int,
        uncompressed_bytes: int,
        compressed_bytes: int,
        duration_seconds: float,
    ) -> None:
        self.emit(
            "replica_segment_uploaded",
            {
                "table": table,
                "part_number": part_number,
                "uncompressed_bytes": uncompressed_bytes,
                "compressed_bytes": compressed_bytes,
                "duration_seconds": duration_seconds,
            },
        )

    def emit_retry_event(self, *, table: str, attempt: int, wait_seconds: float, reason: str) -> None:
        self.emit(
            "replica_retry",
            {
                "table": table,
                "attempt": attempt,
                "wait_seconds": wait_seconds,
                "reason": reason,
            },
        )

    def emit_table_loaded(
        self,
        *,
        table: str,
        segments: int,
        bytes_uploaded: int,
        rows_loaded: Optional[int],
        duration_seconds: float,
        truncating_columns: List[str],
    ) -> None:
        self.emit(
            "replica_table_loaded",
            {
                "table": table,
                "segments": segments,
                "bytes_uploaded": bytes_uploaded,
                "rows_loaded": rows_loaded,
                "duration_seconds": duration_seconds,
                "truncating_columns": truncating_columns,
            },
        )

    def emit_table_failed(self, *, table: str, stage: str, error: str, duration_seconds: float) -> None:
        self.emit(
            "replica_table_failed",
            {
                "table": table,
                "stage": stage,
                "error": error,
                "duration_seconds": duration_seconds,
            },
        )

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _maybe_push_to_prometheus(
        self, metric_name: str, payload: Dict, event_time: datetime
    ) -> None:
        if not self._prom_gateway:
            return

        registry = CollectorRegistry()
        labels = {
            "job_name": self.tags.job_name,
            "metric": metric_name,
            "table": str(payload.get("table", "")),
        }

        def gauge(name: str, documentation: str, value) -> None:
            g = Gauge(name, documentation, labelnames=list(labels.keys()), registry=registry)
            g.labels(**labels).set(value or 0)

        if metric_name == "replica_segment_uploaded":
            gauge("replica_segment_part_number", "Latest uploaded part number", payload.get("part_number"))
            gauge("replica_segment_compressed_bytes", "Compressed bytes in segment", payload.get("compressed_bytes"))
            gauge("replica_segment_duration_seconds", "Segment upload duration", payload.get("duration_seconds"))

        elif metric_name == "replica_retry":
            gauge("replica_retry_wait_seconds", "Retry wait duration", payload.get("wait_seconds"))
            gauge("replica_retry_attempt", "Retry attempt count", payload.get("attempt"))

        elif metric_name == "replica_table_loaded":
            gauge("replica_table_rows_loaded", "Rows loaded by the last COPY", payload.get("rows_loaded"))
            gauge("replica_table_segments", "Segments uploaded for the table", payload.get("segments"))
            gauge("replica_table_duration_seconds", "Table replication duration", payload.get("duration_seconds"))
            gauge(
                "replica_table_truncating_columns",
                "Columns whose values may be truncated on load",
                len(payload.get("truncating_columns") or []),
            )

        elif metric_name == "replica_table_failed":
            gauge("replica_table_failure", "Table replication failed", 1)

        push_to_gateway(
            self._prom_gateway,
            job=self._prom_job,
            registry=registry,
            grouping_key={"emitted_at": event_time.isoformat()},
        )
