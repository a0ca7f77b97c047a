"""
Exceptions raised by the Postgres -> Redshift replica pipeline.

Hierarchy:
    ReplicationError
    ├── ConfigError            Required settings missing or malformed.
    ├── SourceReadError        COPY stream from the source database failed.
    │   └── CompressionError   Writing the gzip spool failed.
    ├── UploadSessionError     Multipart upload could not be opened, completed or aborted.
    └── LoadError              Swap transaction in the warehouse failed and was rolled back.

Transport failures while uploading a single part are NOT wrapped here; they
surface as botocore connection errors so the driver can retry the part.
"""

from __future__ import annotations

from typing import Optional


class ReplicationError(Exception):
    """Base class for all replica pipeline errors."""


class ConfigError(ReplicationError):
    """Raised when the replication configuration is incomplete."""

    def __init__(self, message: str, missing: Optional[list] = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class SourceReadError(ReplicationError):
    """
    Raised when streaming rows out of the source database fails.

    Args:
        message: Human-readable description.
        table: Source table being exported when the error occurred.
    """

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message)
        self.table = table

    def __str__(self) -> str:
        base = super().__str__()
        if self.table:
            return f"{base} | table={self.table}"
        return base


class CompressionError(SourceReadError):
    """Raised when a segment spool cannot be written or finalized."""


class UploadSessionError(ReplicationError):
    """
    Raised when the object store rejects a multipart upload operation.

    Args:
        message: Human-readable description.
        bucket: Target bucket.
        key: Object key of the session.
        upload_id: Store-issued session id, if the session was opened.
        code: Store error code (e.g. ``NoSuchBucket``), if known.
    """

    def __init__(
        self,
        message: str,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        upload_id: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.code:
            parts.append(f"code={self.code}")
        if self.bucket and self.key:
            parts.append(f"object=s3://{self.bucket}/{self.key}")
        if self.upload_id:
            parts.append(f"upload_id={self.upload_id}")
        if parts:
            return f"{base} | {' '.join(parts)}"
        return base


class LoadError(ReplicationError):
    """Raised when the destination swap transaction fails."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message)
        self.table = table

    def __str__(self) -> str:
        base = super().__str__()
        if self.table:
            return f"{base} | table={self.table}"
        return base
