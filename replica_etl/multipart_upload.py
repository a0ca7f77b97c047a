"""
Multipart upload coordinator.

Owns one S3 multipart upload session per table per run:

    begin(key)                -> delete prior objects at key, abort stale sessions,
                                 create_multipart_upload
    upload_part(session, seg) -> upload_part, record (part number, ETag)
    complete(session)         -> complete_multipart_upload from the recorded parts
    abort(session)            -> abort_multipart_upload

``open_session()`` wraps the protocol so every opened session reaches exactly
one of complete or abort. Transport errors from ``upload_part`` propagate
unwrapped so the caller may retry the part; store-side errors become
``UploadSessionError``.
"""

from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List

from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from replica_etl.compressor import ExportSegment
from replica_etl.exceptions import UploadSessionError

logger = logging.getLogger(__name__)

# Errors worth retrying for a single part
TRANSPORT_ERRORS = (BotoConnectionError, HTTPClientError)

DELETE_BATCH_SIZE = 1000


class SessionState(enum.Enum):
    OPEN = "open"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class UploadSession:
    bucket: str
    key: str
    upload_id: str
    parts: Dict[int, str] = field(default_factory=dict)
    state: SessionState = SessionState.OPEN

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1

    def completed_parts(self) -> List[dict]:
        return [
            {"PartNumber": number, "ETag": self.parts[number]}
            for number in sorted(self.parts)
        ]


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


class MultipartUploadCoordinator:
    """Runs the S3 multipart upload protocol for one bucket."""

    def __init__(self, s3_client, bucket: str) -> None:
        self.s3 = s3_client
        self.bucket = bucket

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #
    def begin(self, key: str) -> UploadSession:
        """Clear previous output at ``key`` and open a new session."""
        self.delete_existing(key)
        self.abort_stale_sessions(key)
        try:
            response = self.s3.create_multipart_upload(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise UploadSessionError(
                f"Could not create multipart upload: {exc}",
                bucket=self.bucket, key=key, code=_error_code(exc),
            ) from exc
        session = UploadSession(bucket=self.bucket, key=key, upload_id=response["UploadId"])
        logger.debug("Opened multipart upload %s for s3://%s/%s", session.upload_id, self.bucket, key)
        return session

    def upload_part(self, session: UploadSession, segment: ExportSegment) -> str:
        """
        Upload one segment as the part matching its number; returns the ETag.

        A part may be uploaded again (retry) but parts cannot skip ahead.
        """
        self._require_open(session)
        number = segment.part_number
        if number != session.next_part_number and number not in session.parts:
            raise UploadSessionError(
                f"Part {number} uploaded out of order (expected {session.next_part_number})",
                bucket=session.bucket, key=session.key, upload_id=session.upload_id,
            )

        logger.info("Uploading %s part %d (%d bytes)", session.key, number, segment.compressed_size)
        segment.rewind()
        try:
            response = self.s3.upload_part(
                Body=segment.payload,
                Bucket=session.bucket,
                Key=session.key,
                PartNumber=number,
                UploadId=session.upload_id,
            )
        except ClientError as exc:
            raise UploadSessionError(
                f"Upload of part {number} rejected: {exc}",
                bucket=session.bucket, key=session.key,
                upload_id=session.upload_id, code=_error_code(exc),
            ) from exc

        session.parts[number] = response["ETag"]
        return response["ETag"]

    def list_completed_parts(self, session: UploadSession) -> List[dict]:
        """Parts the store has recorded for the session, in part-number order."""
        parts: List[dict] = []
        kwargs = dict(Bucket=session.bucket, Key=session.key, UploadId=session.upload_id)
        try:
            while True:
                response = self.s3.list_parts(**kwargs)
                parts.extend(
                    {"PartNumber": part["PartNumber"], "ETag": part["ETag"]}
                    for part in response.get("Parts", [])
                )
                if not response.get("IsTruncated"):
                    break
                kwargs["PartNumberMarker"] = response["NextPartNumberMarker"]
        except ClientError as exc:
            raise UploadSessionError(
                f"Could not list uploaded parts: {exc}",
                bucket=session.bucket, key=session.key,
                upload_id=session.upload_id, code=_error_code(exc),
            ) from exc
        return sorted(parts, key=lambda part: part["PartNumber"])

    def complete(self, session: UploadSession) -> None:
        """Assemble the object from every recorded part, ordered by part number."""
        self._require_open(session)
        recorded = session.completed_parts()
        if not recorded:
            raise UploadSessionError(
                "Cannot complete a multipart upload without parts",
                bucket=session.bucket, key=session.key, upload_id=session.upload_id,
            )

        stored = [part["PartNumber"] for part in self.list_completed_parts(session)]
        expected = [part["PartNumber"] for part in recorded]
        if stored != expected:
            raise UploadSessionError(
                f"Store reports parts {stored}, expected {expected}",
                bucket=session.bucket, key=session.key, upload_id=session.upload_id,
            )

        try:
            self.s3.complete_multipart_upload(
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.upload_id,
                MultipartUpload={"Parts": recorded},
            )
        except ClientError as exc:
            raise UploadSessionError(
                f"Could not complete multipart upload: {exc}",
                bucket=session.bucket, key=session.key,
                upload_id=session.upload_id, code=_error_code(exc),
            ) from exc
        session.state = SessionState.COMPLETED
        logger.info("Completed s3://%s/%s from %d part(s)", session.bucket, session.key, len(recorded))

    def abort(self, session: UploadSession) -> None:
        """Discard all uploaded parts. No-op for a session that is no longer open."""
        if session.state is not SessionState.OPEN:
            return
        try:
            self.s3.abort_multipart_upload(
                Bucket=session.bucket, Key=session.key, UploadId=session.upload_id
            )
        except (ClientError, BotoCoreError) as exc:
            raise UploadSessionError(
                f"Could not abort multipart upload: {exc}",
                bucket=session.bucket, key=session.key, upload_id=session.upload_id,
                code=_error_code(exc) if isinstance(exc, ClientError) else None,
            ) from exc
        session.state = SessionState.ABORTED
        logger.warning("Aborted multipart upload for s3://%s/%s", session.bucket, session.key)

    @contextmanager
    def open_session(self, key: str) -> Iterator[UploadSession]:
        """
        Open a session, complete it when the block succeeds, abort it otherwise.

        An abort failure is logged and never replaces the original error.
        """
        session = self.begin(key)
        try:
            yield session
            self.complete(session)
        except BaseException:
            try:
                self.abort(session)
            except UploadSessionError as abort_exc:
                logger.error("%s", abort_exc)
            raise

    # ------------------------------------------------------------------ #
    # Previous-run cleanup
    # ------------------------------------------------------------------ #
    def delete_existing(self, prefix: str) -> int:
        """Delete every object whose key starts with ``prefix``; returns the count."""
        keys: List[str] = []
        kwargs = dict(Bucket=self.bucket, Prefix=prefix)
        try:
            while True:
                response = self.s3.list_objects_v2(**kwargs)
                keys.extend(obj["Key"] for obj in response.get("Contents", []))
                if not response.get("IsTruncated"):
                    break
                kwargs["ContinuationToken"] = response["NextContinuationToken"]

            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                batch = keys[start:start + DELETE_BATCH_SIZE]
                response = self.s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
                errors = response.get("Errors", [])
                if errors:
                    first = errors[0]
                    raise UploadSessionError(
                        f"Could not delete {len(errors)} previous object(s), "
                        f"first {first.get('Key')}: {first.get('Message', '')}",
                        bucket=self.bucket, key=prefix, code=first.get("Code"),
                    )
        except ClientError as exc:
            raise UploadSessionError(
                f"Could not clear previous export: {exc}",
                bucket=self.bucket, key=prefix, code=_error_code(exc),
            ) from exc

        if keys:
            logger.info("Deleted %d previous object(s) under s3://%s/%s", len(keys), self.bucket, prefix)
        return len(keys)

    def abort_stale_sessions(self, key: str) -> int:
        """Abort multipart uploads left open at ``key`` by an interrupted run."""
        stale: List[dict] = []
        kwargs = dict(Bucket=self.bucket, Prefix=key)
        try:
            while True:
                response = self.s3.list_multipart_uploads(**kwargs)
                stale.extend(u for u in response.get("Uploads", []) if u["Key"] == key)
                if not response.get("IsTruncated"):
                    break
                kwargs["KeyMarker"] = response["NextKeyMarker"]
                kwargs["UploadIdMarker"] = response["NextUploadIdMarker"]

            for upload in stale:
                self.s3.abort_multipart_upload(
                    Bucket=self.bucket, Key=key, UploadId=upload["UploadId"]
                )
        except ClientError as exc:
            raise UploadSessionError(
                f"Could not abort stale multipart uploads: {exc}",
                bucket=self.bucket, key=key, code=_error_code(exc),
            ) from exc

        if stale:
            logger.warning("Aborted %d stale multipart upload(s) for s3://%s/%s", len(stale), self.bucket, key)
        return len(stale)

    def _require_open(self, session: UploadSession) -> None:
        if session.state is not SessionState.OPEN:
            raise UploadSessionError(
                f"Multipart upload is {session.state.value}",
                bucket=session.bucket, key=session.key, upload_id=session.upload_id,
            )
