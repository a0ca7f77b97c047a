"""
Chunked gzip compressor.

Splits one table's row stream into size-bounded gzip segments, each spooled
to a temporary file before it is handed to the uploader. Segment rotation is
a small state machine:

    ACCUMULATING --(uncompressed bytes >= threshold)--> FULL
    FULL --(next row arrives)--> segment emitted, new ACCUMULATING sink
    any --(end of stream)--> final segment emitted

Rotation waits for the next row, so a stream of N bytes produces
ceil(N / threshold) segments and an empty stream still produces exactly one
(empty) segment. Concatenated segments form a valid multi-member gzip file.
"""

from __future__ import annotations

import enum
import gzip
import logging
import os
import tempfile
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, Optional

from config import DEFAULT_SEGMENT_SIZE
from replica_etl.exceptions import CompressionError

logger = logging.getLogger(__name__)

SPOOL_PREFIX = "pg2rs"


class SegmentState(enum.Enum):
    ACCUMULATING = "accumulating"
    FULL = "full"
    CLOSED = "closed"


class Spool:
    """A named temporary file that is deleted exactly once."""

    def __init__(self, spool_dir: Optional[str] = None) -> None:
        handle = tempfile.NamedTemporaryFile(
            prefix=SPOOL_PREFIX, suffix=".gz", dir=spool_dir, delete=False
        )
        self.path = handle.name
        self.file: BinaryIO = handle
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            self.file.close()
        except OSError as exc:
            logger.warning("Could not close spool %s: %s", self.path, exc)
        try:
            os.unlink(self.path)
        except OSError as exc:
            logger.warning("Could not delete spool %s: %s", self.path, exc)


@dataclass
class ExportSegment:
    """One compressed slice of a table's rows, positioned for reading."""

    part_number: int
    spool: Spool = field(repr=False)
    uncompressed_size: int = 0
    compressed_size: int = 0
    record_count: int = 0

    @property
    def payload(self) -> BinaryIO:
        return self.spool.file

    def rewind(self) -> None:
        self.spool.file.seek(0)

    def read_bytes(self) -> bytes:
        self.rewind()
        data = self.spool.file.read()
        self.rewind()
        return data

    def release(self) -> None:
        self.spool.release()


class _SegmentSink:
    """gzip stream over a fresh spool; tracks uncompressed bytes written."""

    def __init__(self, part_number: int, threshold: int, spool_dir: Optional[str], compresslevel: int) -> None:
        self.part_number = part_number
        self.threshold = threshold
        self.uncompressed_size = 0
        self.record_count = 0
        self.state = SegmentState.ACCUMULATING
        try:
            self.spool = Spool(spool_dir)
            # empty filename and mtime=0 keep the gzip header deterministic
            self._gzip = gzip.GzipFile(
                filename="", fileobj=self.spool.file, mode="wb", compresslevel=compresslevel, mtime=0
            )
        except OSError as exc:
            raise CompressionError(f"Could not open segment spool: {exc}") from exc

    def write(self, row: bytes) -> None:
        try:
            self._gzip.write(row)
        except (OSError, zlib.error) as exc:
            raise CompressionError(
                f"Could not write segment {self.part_number}: {exc}"
            ) from exc
        self.uncompressed_size += len(row)
        self.record_count += 1
        if self.uncompressed_size >= self.threshold:
            self.state = SegmentState.FULL

    def finish(self) -> ExportSegment:
        """Write the gzip trailer and rewind the spool for reading."""
        try:
            self._gzip.close()
            self.spool.file.flush()
            compressed_size = self.spool.file.tell()
            self.spool.file.seek(0)
        except (OSError, zlib.error) as exc:
            raise CompressionError(
                f"Could not finalize segment {self.part_number}: {exc}"
            ) from exc
        self.state = SegmentState.CLOSED
        return ExportSegment(
            part_number=self.part_number,
            spool=self.spool,
            uncompressed_size=self.uncompressed_size,
            compressed_size=compressed_size,
            record_count=self.record_count,
        )

    def release(self) -> None:
        if not self._gzip.closed:
            try:
                self._gzip.close()
            except (OSError, ValueError, zlib.error) as exc:
                logger.debug("Discarding unfinished segment %d: %s", self.part_number, exc)
        self.spool.release()


class ChunkedCompressor:
    """
    Turns a row stream into a sequence of ``ExportSegment`` objects.

    Each segment is valid only until the consumer asks for the next one; its
    spool is deleted at that point. Wrap the generator in
    ``contextlib.closing`` so the last spool is deleted even when the
    consumer fails half way.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_SEGMENT_SIZE,
        spool_dir: Optional[str] = None,
        compresslevel: int = 6,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.spool_dir = spool_dir
        self.compresslevel = compresslevel

    def _open_sink(self, part_number: int) -> _SegmentSink:
        return _SegmentSink(part_number, self.threshold, self.spool_dir, self.compresslevel)

    def segments(self, rows: Iterable[bytes]) -> Iterator[ExportSegment]:
        sink = self._open_sink(1)
        segment: Optional[ExportSegment] = None
        try:
            for row in rows:
                if sink.state is SegmentState.FULL:
                    segment = sink.finish()
                    logger.debug(
                        "Segment %d full at %d bytes", segment.part_number, segment.uncompressed_size
                    )
                    yield segment
                    segment.release()
                    sink = self._open_sink(segment.part_number + 1)
                sink.write(row)

            segment = sink.finish()
            yield segment
        finally:
            sink.release()
            if segment is not None:
                segment.release()
