"""Multipart upload coordinator with per-part integrity verification.

Every part is sent with a Content-MD5 header and the ETag S3 returns for
it must equal the locally computed MD5. Completion passes the ordered
part/ETag list back to S3, which validates it again, and the composite
ETag of the finished object is cross-checked against the local digests.
"""

import base64
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from .checksum import MAX_PART_COUNT, multipart_etag
from .exceptions import IntegrityMismatchError, NetworkError, SessionStateError
from .models import RemoteRecord, SessionState, UploadPart, UploadSession

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    'RequestTimeout',
    'RequestTimeoutException',
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'InternalError',
    'ServiceUnavailable',
    '500',
    '503',
}
INTEGRITY_ERROR_CODES = {'BadDigest', 'InvalidDigest'}

_RESERVED = object()


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def is_transient(error: Exception) -> bool:
    """Network hiccups, timeouts, throttling and server-side 5xx."""
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(error, ClientError):
        if error_code(error) in TRANSIENT_ERROR_CODES:
            return True
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        return status >= 500
    return False


class MultipartUploadCoordinator:
    """Open, feed, finalize and abort multipart uploads for one bucket.

    At most one session per dataset can be open through a coordinator;
    the per-dataset token is taken under a lock before S3 is contacted.

    Args:
        s3_client: boto3 S3 client
        bucket: Destination bucket
        max_retries: Retries per part (and per protocol call) after the first try
        initial_backoff: Delay before the first retry, in seconds
        max_backoff: Upper bound for a single delay
        backoff_multiplier: Growth factor between consecutive delays
        max_parts: Highest part number a session may use
        sleep: Injectable sleep function
    """

    def __init__(self, s3_client, bucket: str, max_retries: int = 5,
                 initial_backoff: float = 2.0, max_backoff: float = 60.0,
                 backoff_multiplier: float = 2.0, max_parts: int = MAX_PART_COUNT,
                 sleep: Callable[[float], None] = time.sleep):
        self.s3_client = s3_client
        self.bucket = bucket
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.max_parts = max_parts
        self.sleep = sleep
        self._lock = threading.Lock()
        self._open_sessions: Dict[str, object] = {}

    @classmethod
    def from_config(cls, s3_client, bucket: str, retry_settings, max_parts: int = MAX_PART_COUNT,
                    sleep=time.sleep):
        return cls(
            s3_client,
            bucket,
            max_retries=retry_settings.max_retries,
            initial_backoff=retry_settings.initial_backoff_seconds,
            max_backoff=retry_settings.max_backoff_seconds,
            backoff_multiplier=retry_settings.backoff_multiplier,
            max_parts=max_parts,
            sleep=sleep,
        )

    def backoff(self, attempt: int) -> float:
        delay = self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)

    def _call(self, description: str, func, **kwargs):
        """Call an S3 API, retrying transient failures with backoff."""
        attempt = 1
        while True:
            try:
                return func(**kwargs)
            except (ClientError, BotoCoreError) as e:
                if not is_transient(e):
                    raise
                if attempt > self.max_retries:
                    raise NetworkError(f"{description} failed after {attempt} attempts: {e}") from e
                delay = self.backoff(attempt)
                logger.warning(f"{description} failed (attempt {attempt}), retrying in {delay:.1f}s: {e}")
                self.sleep(delay)
                attempt += 1

    def open_sessions(self) -> List[UploadSession]:
        with self._lock:
            return [s for s in self._open_sessions.values() if isinstance(s, UploadSession)]

    def open_session(self, dataset: str, key: str, snapshot: str,
                     parent: Optional[str] = None, metadata: Optional[Dict[str, str]] = None,
                     tags: Optional[Dict[str, str]] = None) -> UploadSession:
        """Start a multipart upload for ``dataset``.

        Raises:
            SessionStateError: If this coordinator already has a session
                open for the dataset
        """
        with self._lock:
            existing = self._open_sessions.get(dataset)
            if existing is not None:
                where = existing.key if isinstance(existing, UploadSession) else 'starting'
                raise SessionStateError(f"An upload for {dataset} is already open ({where})")
            self._open_sessions[dataset] = _RESERVED

        kwargs = {'Bucket': self.bucket, 'Key': key}
        if metadata:
            kwargs['Metadata'] = metadata
        if tags:
            kwargs['Tagging'] = urlencode(tags)

        try:
            response = self._call(f"Create upload {key}", self.s3_client.create_multipart_upload, **kwargs)
        except BaseException:
            with self._lock:
                self._open_sessions.pop(dataset, None)
            raise

        session = UploadSession(
            dataset=dataset,
            bucket=self.bucket,
            key=key,
            upload_id=response['UploadId'],
            snapshot=snapshot,
            parent=parent,
        )
        with self._lock:
            self._open_sessions[dataset] = session
        logger.info(f"Opened multipart upload s3://{self.bucket}/{key}")
        logger.debug(f"  Upload ID: {session.upload_id}")
        return session

    def _require_open(self, session: UploadSession):
        if not session.is_open:
            raise SessionStateError(f"Upload {session.key} is {session.state.value}, not open")

    def upload_part(self, session: UploadSession, part_number: int, data: bytes,
                    digest: bytes) -> UploadPart:
        """Send one part and verify the store received exactly ``data``.

        Transient failures and integrity mismatches are retried; when the
        retries run out the session is aborted and the last error raised.
        """
        self._require_open(session)
        expected_number = len(session.parts) + 1
        if part_number != expected_number:
            self.abort_session(session)
            raise SessionStateError(
                f"Part {part_number} of {session.key} out of sequence, expected {expected_number}"
            )
        if part_number > self.max_parts:
            self.abort_session(session)
            raise SessionStateError(
                f"Part {part_number} of {session.key} exceeds the limit of {self.max_parts} parts"
            )

        expected = digest.hex()
        content_md5 = base64.b64encode(digest).decode('ascii')
        attempt = 1
        while True:
            try:
                response = self.s3_client.upload_part(
                    Bucket=session.bucket,
                    Key=session.key,
                    UploadId=session.upload_id,
                    PartNumber=part_number,
                    Body=data,
                    ContentLength=len(data),
                    ContentMD5=content_md5,
                )
                received = response['ETag'].strip('"')
                if received == expected:
                    break
                error = IntegrityMismatchError(
                    f"Part {part_number} of {session.key}: store returned {received}, expected {expected}",
                    part_number, expected, received,
                )
            except ClientError as e:
                if error_code(e) in INTEGRITY_ERROR_CODES:
                    error = IntegrityMismatchError(
                        f"Part {part_number} of {session.key} rejected by store: {error_code(e)}",
                        part_number, expected,
                    )
                elif is_transient(e):
                    error = NetworkError(f"Part {part_number} of {session.key}: {e}")
                else:
                    self.abort_session(session)
                    raise
            except BotoCoreError as e:
                if not is_transient(e):
                    self.abort_session(session)
                    raise
                error = NetworkError(f"Part {part_number} of {session.key}: {e}")

            if attempt > self.max_retries:
                logger.error(f"Giving up on part {part_number} after {attempt} attempts: {error}")
                self.abort_session(session)
                raise error
            delay = self.backoff(attempt)
            logger.warning(f"{error} (attempt {attempt}), retrying in {delay:.1f}s")
            self.sleep(delay)
            attempt += 1

        part = UploadPart(part_number=part_number, size=len(data), etag=received)
        session.parts.append(part)
        logger.debug(f"  Part {part_number} of {session.key} verified ({len(data)} bytes, {received})")
        return part

    def finalize_session(self, session: UploadSession) -> RemoteRecord:
        """Complete the upload; the object and its RemoteRecord exist only after this."""
        self._require_open(session)
        numbers = [part.part_number for part in session.parts]
        if not numbers or numbers != list(range(1, len(numbers) + 1)):
            self.abort_session(session)
            raise SessionStateError(
                f"Refusing to finalize {session.key}: parts {numbers} are not contiguous from 1"
            )

        parts = [{'ETag': f'"{part.etag}"', 'PartNumber': part.part_number} for part in session.parts]
        expected = multipart_etag(part.etag for part in session.parts)
        try:
            response = self._call(
                f"Complete upload {session.key}",
                self.s3_client.complete_multipart_upload,
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.upload_id,
                MultipartUpload={'Parts': parts},
            )
        except ClientError as e:
            if error_code(e) != 'NoSuchUpload' or not self._already_completed(session, expected):
                self.abort_session(session)
                raise
            response = {'ETag': expected}
        except BaseException:
            self.abort_session(session)
            raise

        received = (response.get('ETag') or '').strip('"')
        if received and received != expected:
            logger.error(f"Composite ETag mismatch for {session.key}: {received} != {expected}")
            self._call(f"Delete {session.key}", self.s3_client.delete_object,
                       Bucket=session.bucket, Key=session.key)
            self._close(session, SessionState.ABORTED)
            raise IntegrityMismatchError(
                f"Completed object {session.key} has ETag {received}, expected {expected}",
                expected=expected, received=received,
            )

        self._close(session, SessionState.FINALIZED)
        logger.info(f"✓ Completed s3://{session.bucket}/{session.key} ({len(parts)} parts)")
        return RemoteRecord(
            dataset=session.dataset,
            snapshot=session.snapshot,
            parent=session.parent,
            size=session.bytes_uploaded,
            key=session.key,
            etag=received or expected,
        )

    def _already_completed(self, session: UploadSession, expected: str) -> bool:
        """True if the object exists with ``expected`` as its ETag.

        A completion whose response was lost leaves no upload behind for
        the retry, which then fails with NoSuchUpload.
        """
        try:
            response = self._call(f"Head {session.key}", self.s3_client.head_object,
                                  Bucket=session.bucket, Key=session.key)
        except (ClientError, NetworkError) as e:
            logger.warning(f"Could not confirm completion of {session.key}: {e}")
            return False
        received = (response.get('ETag') or '').strip('"')
        if received != expected:
            logger.warning(f"{session.key} exists with ETag {received}, expected {expected}")
            return False
        logger.info(f"Upload {session.key} was completed by an earlier attempt")
        return True

    def abort_session(self, session: UploadSession):
        """Discard all uploaded parts. Calling it again is a no-op."""
        if session.state == SessionState.ABORTED:
            return
        if session.state == SessionState.FINALIZED:
            raise SessionStateError(f"Upload {session.key} is already finalized")

        logger.warning(f"Aborting multipart upload s3://{session.bucket}/{session.key}")
        try:
            self._call(
                f"Abort upload {session.key}",
                self.s3_client.abort_multipart_upload,
                Bucket=session.bucket,
                Key=session.key,
                UploadId=session.upload_id,
            )
        except ClientError as e:
            if error_code(e) != 'NoSuchUpload':
                raise
        session.parts.clear()
        self._close(session, SessionState.ABORTED)

    def _close(self, session: UploadSession, state: SessionState):
        session.state = state
        with self._lock:
            if self._open_sessions.get(session.dataset) is session:
                del self._open_sessions[session.dataset]

    def list_pending_uploads(self, key_prefix: str) -> List[dict]:
        """In-progress multipart uploads whose key starts with ``key_prefix``."""
        paginator = self.s3_client.get_paginator('list_multipart_uploads')
        uploads = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix):
            uploads.extend(page.get('Uploads', []))
        return uploads

    def reconcile_pending(self, dataset: str, key_prefixes: Sequence[str],
                          stale_after: timedelta, now: Optional[datetime] = None,
                          dry_run: bool = False) -> int:
        """Abort uploads left behind by interrupted runs.

        An upload younger than ``stale_after`` belongs to a sync that may
        still be running elsewhere; the dataset is then refused.

        Returns:
            Number of stale uploads aborted (or that would be, in dry-run)

        Raises:
            SessionStateError: If a recent upload for the dataset exists
        """
        now = now or datetime.now(timezone.utc)
        own = {s.upload_id for s in self.open_sessions()}
        stale, active = [], []
        for key_prefix in key_prefixes:
            for upload in self.list_pending_uploads(key_prefix):
                if upload['UploadId'] in own:
                    continue
                initiated = upload.get('Initiated')
                if initiated is not None and now - initiated < stale_after:
                    active.append(upload)
                else:
                    stale.append(upload)

        if active:
            keys = ', '.join(f"{u['Key']} (started {u.get('Initiated')})" for u in active)
            raise SessionStateError(f"Another upload of {dataset} is in progress: {keys}")

        for upload in stale:
            if dry_run:
                logger.info(f"[Dry Run] Would abort stale upload {upload['Key']}")
                continue
            logger.warning(f"Aborting stale upload {upload['Key']} started {upload.get('Initiated')}")
            try:
                self._call(
                    f"Abort stale upload {upload['Key']}",
                    self.s3_client.abort_multipart_upload,
                    Bucket=self.bucket,
                    Key=upload['Key'],
                    UploadId=upload['UploadId'],
                )
            except ClientError as e:
                if error_code(e) != 'NoSuchUpload':
                    raise
        return len(stale)
