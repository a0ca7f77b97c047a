"""
pipeline.py:
  - zero-row table: one empty segment, upload completed, empty table loaded
  - multi-segment table reaches the warehouse intact
  - rerun leaves the same visible data (idempotent overwrite)
  - a failing table does not stop the run (one-bad-table isolation), even with a dead metrics gateway
  - every post-begin failure leaves no object and no open upload at the key
  - transport errors are retried with backoff, then escalated
  - source errors reset the shared connection before the next table
  - replicate() wires discovery, engines and dry runs
"""

from __future__ import annotations

import gzip
import json

import pytest

from fakes import (
    FakeS3Client,
    FakeSourceEngine,
    FakeSourceTable,
    FakeWarehouseEngine,
    client_error,
    transport_error,
)
from monitoring.metrics import MetricsEmitter
from replica_etl import pipeline as pipeline_module
from replica_etl.compressor import ChunkedCompressor
from replica_etl.exceptions import SourceReadError, UploadSessionError
from replica_etl.multipart_upload import MultipartUploadCoordinator
from replica_etl.pipeline import ReplicationPipeline, replicate
from replica_etl.row_source import RowStreamSource
from replica_etl.schema import discover_tables
from replica_etl.swap_loader import AtomicSwapLoader

USERS_COLUMNS = [("id", "integer", False), ("name", "character varying", True, 100), ("active", "boolean")]


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(pipeline_module.time, "sleep", sleeps.append)
    return sleeps


def user_rows(count):
    return [f"{i}|user-{i}|{'t' if i % 2 else 'f'}\n".encode() for i in range(count)]


def build(config, s3, warehouse, source_engine, metrics, threshold=64):
    source = RowStreamSource(source_engine)
    pipeline = ReplicationPipeline(
        config,
        source,
        MultipartUploadCoordinator(s3, config.s3_bucket),
        AtomicSwapLoader(warehouse, config.target_schema, config.s3_bucket, "IAM_ROLE 'arn:aws:iam::1:role/x'"),
        ChunkedCompressor(threshold=threshold, spool_dir=config.spool_dir),
        metrics,
    )
    return pipeline, source


def run(pipeline, source_engine, **kwargs):
    tables = discover_tables(source_engine)
    with pipeline.source:
        return pipeline.update_tables(tables, **kwargs)


def metric_events(metrics):
    return [json.loads(line) for line in metrics.log_path.read_text().splitlines()]


class TestSingleTable:
    def test_zero_row_table(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS)})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        result = summary.results[0]
        assert summary.ok
        assert result.segments == 1
        assert gzip.decompress(s3.objects["export/users.psv.gz"]) == b""
        assert s3.open_uploads() == []
        assert warehouse.rows("replica", "users") == []
        assert result.rows_loaded == 0

    def test_multi_segment_table_loaded(self, config, s3, warehouse, metrics):
        rows = user_rows(50)
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=rows)})
        pipeline, _ = build(config, s3, warehouse, engine, metrics, threshold=100)

        summary = run(pipeline, engine)

        result = summary.results[0]
        assert result.ok
        assert result.segments > 1
        assert result.bytes_uploaded == len(s3.objects["export/users.psv.gz"])
        assert result.rows_loaded == 50
        assert warehouse.rows("replica", "users")[3] == ("3", "user-3", "t")
        assert engine.copy_statements[0].startswith('COPY (SELECT "id", "name", CAST("active" AS CHAR(1))')

        events = [e["metric"] for e in metric_events(metrics)]
        assert events.count("replica_segment_uploaded") == result.segments
        assert events[-1] == "replica_table_loaded"

    def test_rerun_is_idempotent(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(5))})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        run(pipeline, engine)
        first = list(warehouse.rows("replica", "users"))
        first_object = s3.objects["export/users.psv.gz"]
        run(pipeline, engine)

        assert warehouse.rows("replica", "users") == first
        assert s3.objects["export/users.psv.gz"] == first_object
        assert list(s3.objects) == ["export/users.psv.gz"]
        assert warehouse.rows("replica", "users_updating") == first

    def test_skip_load_leaves_warehouse_untouched(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(3))})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine, skip_load=True)

        assert summary.ok
        assert "export/users.psv.gz" in s3.objects
        assert warehouse.statements == []


class TestIsolation:
    def test_bad_table_does_not_stop_run(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine(
            {
                "broken": FakeSourceTable(columns=[("id", "integer")], rows=[b"1\n", b"2\n"], fail_after=1),
                "users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(3)),
            }
        )
        pipeline, source = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert not summary.ok
        assert [r.source for r in summary.failed] == ["broken"]
        assert [r.source for r in summary.succeeded] == ["users"]
        failed = summary.failed[0]
        assert failed.stage == "export"
        assert "server closed the connection" in failed.error
        assert "export/broken.psv.gz" not in s3.objects
        assert s3.open_uploads() == []
        assert len(warehouse.rows("replica", "users")) == 3

        # one connection, rolled back after each table
        assert len(engine.connections) == 1
        assert engine.connections[0].rollbacks == 2
        assert "replica_table_failed" in [e["metric"] for e in metric_events(metrics)]

    def test_unreachable_metrics_gateway_does_not_stop_run(self, config, s3, warehouse, tmp_path):
        metrics = MetricsEmitter(log_path=tmp_path / "m.log", pushgateway_url="http://127.0.0.1:1")
        engine = FakeSourceEngine(
            {
                "a_broken": FakeSourceTable(columns=[("id", "integer")], rows=[b"1\n"], fail_after=0),
                "users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(3)),
            }
        )
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert [r.source for r in summary.failed] == ["a_broken"]
        assert [r.source for r in summary.succeeded] == ["users"]
        assert len(warehouse.rows("replica", "users")) == 3
        assert [e["metric"] for e in metric_events(metrics)][-1] == "replica_table_loaded"

    def test_failed_load_keeps_previous_generation(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(2))})
        warehouse.add_table("replica", "users", [("id", "INTEGER")], rows=[("old",)])
        warehouse.fail_on["COPY"] = "Load failed"
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert summary.failed[0].stage == "load"
        assert warehouse.rows("replica", "users") == [("old",)]
        assert ("replica", "users_updating") not in warehouse.tables

    @pytest.mark.parametrize(
        "operation, error",
        [
            ("upload_part", client_error("InternalError", "UploadPart")),
            ("list_parts", client_error("InternalError", "ListParts")),
            ("complete_multipart_upload", client_error("InternalError", "CompleteMultipartUpload")),
        ],
    )
    def test_post_begin_failure_leaves_no_object(self, config, s3, warehouse, metrics, operation, error):
        s3.objects["export/users.psv.gz"] = b"previous run"
        s3.always_fail[operation] = error
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(20))})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert summary.failed[0].stage == "export"
        assert "export/users.psv.gz" not in s3.objects
        assert s3.open_uploads() == []

    def test_source_failure_aborts_session(self, config, s3, warehouse, metrics):
        engine = FakeSourceEngine(
            {"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(20), fail_after=15)}
        )
        pipeline, source = build(config, s3, warehouse, engine, metrics)

        table = discover_tables(engine)[0]
        with source, pytest.raises(SourceReadError) as excinfo:
            pipeline.run_for_table(table)

        assert excinfo.value.table == "users"
        assert "abort_multipart_upload" in s3.calls
        assert s3.open_uploads() == []
        assert engine.connections[0].rollbacks == 1
        assert all(cursor.closed for cursor in engine.connections[0].cursors)

    def test_unusable_connection_is_replaced(self, config, s3, warehouse, metrics):
        import psycopg

        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(2))})
        engine.rollback_errors.append(psycopg.OperationalError("connection lost"))
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert summary.ok
        assert engine.connections[0].invalidated
        assert len(engine.connections) == 2


class TestUploadRetry:
    def test_transient_error_retried(self, config, s3, warehouse, metrics, no_sleep):
        s3.fail_next("upload_part", transport_error(), transport_error())
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(4))})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        summary = run(pipeline, engine)

        assert summary.ok
        assert len(no_sleep) == 2
        retries = [e for e in metric_events(metrics) if e["metric"] == "replica_retry"]
        assert [e["payload"]["attempt"] for e in retries] == [1, 2]
        assert gzip.decompress(s3.objects["export/users.psv.gz"]) == b"".join(user_rows(4))

    def test_backoff_doubles(self, config, s3, warehouse, metrics, no_sleep, monkeypatch):
        monkeypatch.setattr(pipeline_module.random, "uniform", lambda a, b: 0.0)
        config.upload_retry_base_delay = 1.5
        s3.fail_next("upload_part", transport_error(), transport_error(), transport_error())
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(1))})
        pipeline, _ = build(config, s3, warehouse, engine, metrics)

        run(pipeline, engine)

        assert no_sleep == [1.5, 3.0, 6.0]

    def test_retries_exhausted(self, config, s3, warehouse, metrics, no_sleep):
        s3.always_fail["upload_part"] = transport_error()
        engine = FakeSourceEngine({"users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(4))})
        pipeline, source = build(config, s3, warehouse, engine, metrics)

        table = discover_tables(engine)[0]
        with source, pytest.raises(UploadSessionError, match="after 4 attempt"):
            pipeline.run_for_table(table)

        assert len(no_sleep) == config.upload_max_retries
        assert s3.open_uploads() == []
        assert "export/users.psv.gz" not in s3.objects


class TestReplicate:
    @pytest.fixture
    def wired(self, monkeypatch, s3):
        source_engine = FakeSourceEngine(
            {
                "users": FakeSourceTable(columns=USERS_COLUMNS, rows=user_rows(3)),
                "sessions": FakeSourceTable(columns=[("id", "integer")], rows=[b"1\n"]),
                "pg_internal": FakeSourceTable(columns=[("id", "integer")]),
            }
        )
        warehouse = FakeWarehouseEngine(s3)
        monkeypatch.setattr(pipeline_module, "get_source_engine", lambda config: source_engine)
        monkeypatch.setattr(pipeline_module, "get_warehouse_engine", lambda config: warehouse)
        monkeypatch.setattr(pipeline_module, "get_s3_client", lambda config: s3)
        return source_engine, warehouse

    def test_replicates_discovered_tables(self, config, metrics, s3, wired):
        source_engine, warehouse = wired
        config.exclude_tables = ["sessions"]

        summary = replicate(config, metrics=metrics)

        assert [r.source for r in summary.results] == ["users"]
        assert summary.ok
        assert len(warehouse.rows("replica", "users")) == 3
        assert source_engine.disposed and warehouse.disposed
        assert source_engine.connections[0].closed
        assert "IAM_ROLE" not in " ".join(warehouse.statements)
        assert "aws_access_key_id=AKIAEXAMPLE" in warehouse.copy_options[0]

    def test_only_and_exclude(self, config, metrics, wired):
        summary = replicate(config, only=["users", "sessions"], exclude=["users"], metrics=metrics)
        assert [r.source for r in summary.results] == ["sessions"]

    def test_dry_run_touches_nothing(self, config, metrics, s3, wired):
        source_engine, warehouse = wired

        summary = replicate(config, dry_run=True, metrics=metrics)

        assert summary.results == []
        assert s3.calls == []
        assert warehouse.statements == []
        assert source_engine.connections == []
        assert source_engine.disposed

    def test_dry_run_logs_redacted_load(self, config, metrics, wired, caplog):
        with caplog.at_level("INFO", logger="replica_etl.pipeline"):
            replicate(config, only=["users"], dry_run=True, metrics=metrics)

        assert "COPY \"replica\".\"users\" FROM 's3://exports/export/users.psv.gz' <redacted> GZIP" in caplog.text
        assert "s3cr3t" not in caplog.text
        assert "AKIAEXAMPLE" not in caplog.text
