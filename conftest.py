"""Shared fixtures: in-memory S3 client and a scripted zfs layer."""

import hashlib
import itertools
import sys
from datetime import datetime, timezone
from urllib.parse import parse_qsl

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from config import Config, PoolConfig, RetryConfig, UploadConfig
from glacier_sync.checksum import multipart_etag
from glacier_sync.exceptions import PlanningError
from glacier_sync.models import Snapshot
from glacier_sync.zfs import ZfsCommands


def client_error(code, operation, status=400, message='test'):
    return ClientError(
        {'Error': {'Code': code, 'Message': message}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        operation,
    )


def transient_error():
    return EndpointConnectionError(endpoint_url='https://s3.test.invalid')


class FakePaginator:
    def __init__(self, pages_func):
        self.pages_func = pages_func

    def paginate(self, **kwargs):
        return self.pages_func(**kwargs)


class FakeS3Client:
    """Enough of the S3 multipart API to exercise the coordinator.

    Failures are injected per operation through ``failures``: a list of
    exceptions raised, one per call, before the call is served.
    ``corrupt_parts`` maps a part number to how many times the returned
    ETag for that part should be wrong. Operations named in
    ``lost_responses`` are served once and then fail as if the response
    never arrived.
    """

    def __init__(self, page_size=2):
        self.objects = {}
        self.uploads = {}
        self.calls = []
        self.failures = {}
        self.corrupt_parts = {}
        self.lost_responses = set()
        self.complete_etag = None
        self.page_size = page_size
        self._ids = itertools.count(1)

    def _record(self, operation, **kwargs):
        self.calls.append((operation, kwargs))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def operations(self, name):
        return [kwargs for operation, kwargs in self.calls if operation == name]

    def get_paginator(self, name):
        return FakePaginator(getattr(self, f"_paginate_{name}"))

    def _pages(self, items, key):
        if not items:
            yield {}
            return
        for start in range(0, len(items), self.page_size):
            yield {key: items[start:start + self.page_size]}

    def _paginate_list_objects_v2(self, Bucket, Prefix=''):
        self._record('list_objects_v2', Bucket=Bucket, Prefix=Prefix)
        items = [
            {'Key': key, 'Size': len(obj['Body']), 'ETag': f'"{obj["ETag"]}"'}
            for key, obj in sorted(self.objects.items()) if key.startswith(Prefix)
        ]
        return self._pages(items, 'Contents')

    def _paginate_list_multipart_uploads(self, Bucket, Prefix=''):
        self._record('list_multipart_uploads', Bucket=Bucket, Prefix=Prefix)
        items = [
            {'Key': upload['Key'], 'UploadId': upload_id, 'Initiated': upload['Initiated']}
            for upload_id, upload in self.uploads.items() if upload['Key'].startswith(Prefix)
        ]
        return self._pages(items, 'Uploads')

    def add_pending_upload(self, key, age):
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {
            'Key': key,
            'Parts': {},
            'Initiated': datetime.now(timezone.utc) - age,
            'Metadata': {},
            'Tags': {},
        }
        return upload_id

    def put_completed(self, key, body=b'data'):
        self.objects[key] = {'Body': body, 'ETag': hashlib.md5(body).hexdigest(),
                             'Metadata': {}, 'Tags': {}}

    def create_multipart_upload(self, Bucket, Key, Metadata=None, Tagging=None):
        self._record('create_multipart_upload', Bucket=Bucket, Key=Key,
                     Metadata=Metadata, Tagging=Tagging)
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {
            'Key': Key,
            'Parts': {},
            'Initiated': datetime.now(timezone.utc),
            'Metadata': dict(Metadata or {}),
            'Tags': dict(parse_qsl(Tagging or '')),
        }
        return {'Bucket': Bucket, 'Key': Key, 'UploadId': upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body, ContentLength=None, ContentMD5=None):
        self._record('upload_part', Bucket=Bucket, Key=Key, UploadId=UploadId,
                     PartNumber=PartNumber, ContentMD5=ContentMD5)
        if UploadId not in self.uploads:
            raise client_error('NoSuchUpload', 'UploadPart', 404)
        etag = hashlib.md5(Body).hexdigest()
        self.uploads[UploadId]['Parts'][PartNumber] = (bytes(Body), etag)
        if self.corrupt_parts.get(PartNumber):
            self.corrupt_parts[PartNumber] -= 1
            return {'ETag': '"00000000000000000000000000000000"'}
        return {'ETag': f'"{etag}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._record('complete_multipart_upload', Bucket=Bucket, Key=Key, UploadId=UploadId,
                     MultipartUpload=MultipartUpload)
        upload = self.uploads.get(UploadId)
        if upload is None:
            raise client_error('NoSuchUpload', 'CompleteMultipartUpload', 404)
        body = b''
        etags = []
        for part in MultipartUpload['Parts']:
            stored = upload['Parts'].get(part['PartNumber'])
            if stored is None or f'"{stored[1]}"' != part['ETag']:
                raise client_error('InvalidPart', 'CompleteMultipartUpload')
            body += stored[0]
            etags.append(stored[1])
        etag = self.complete_etag or multipart_etag(etags)
        del self.uploads[UploadId]
        self.objects[Key] = {'Body': body, 'ETag': etag,
                             'Metadata': upload['Metadata'], 'Tags': upload['Tags']}
        if 'complete_multipart_upload' in self.lost_responses:
            self.lost_responses.discard('complete_multipart_upload')
            raise transient_error()
        return {'Bucket': Bucket, 'Key': Key, 'ETag': f'"{etag}"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._record('abort_multipart_upload', Bucket=Bucket, Key=Key, UploadId=UploadId)
        if UploadId not in self.uploads:
            raise client_error('NoSuchUpload', 'AbortMultipartUpload', 404)
        del self.uploads[UploadId]
        return {}

    def head_object(self, Bucket, Key):
        self._record('head_object', Bucket=Bucket, Key=Key)
        obj = self.objects.get(Key)
        if obj is None:
            raise client_error('404', 'HeadObject', 404, 'Not Found')
        return {'ETag': f'"{obj["ETag"]}"', 'ContentLength': len(obj['Body'])}

    def delete_object(self, Bucket, Key):
        self._record('delete_object', Bucket=Bucket, Key=Key)
        self.objects.pop(Key, None)
        return {}


EXPORT_SCRIPT = (
    "import shutil, sys\n"
    "with open(sys.argv[1], 'rb') as f:\n"
    "    shutil.copyfileobj(f, sys.stdout.buffer)\n"
    "sys.stdout.flush()\n"
    "if int(sys.argv[2]):\n"
    "    sys.stderr.write('cannot send: I/O error\\n')\n"
    "sys.exit(int(sys.argv[2]))\n"
)


class FakeZfs(ZfsCommands):
    """Scripted zfs: snapshot lists from a dict, exports from a Python child process."""

    def __init__(self, tmp_path, snapshots=None, datasets=None):
        super().__init__()
        self.tmp_path = tmp_path
        self.snapshots = snapshots or {}
        self.datasets = datasets or {}
        self.payloads = {}
        self.exit_codes = {}
        self.broken = set()
        self.sent = []

    def add_snapshots(self, dataset, *names):
        existing = self.snapshots.setdefault(dataset, [])
        for name in names:
            existing.append(Snapshot(dataset, name, 1700000000 + len(existing) * 3600))

    def list_datasets(self, pool):
        return sorted(self.datasets.get(pool, []))

    def list_snapshots(self, dataset):
        if dataset in self.broken:
            raise PlanningError(f"Cannot list snapshots of {dataset}: dataset does not exist")
        return list(self.snapshots.get(dataset, []))

    def payload(self, snapshot, parent=None):
        key = (snapshot.full_name, parent.name if parent else None)
        if key not in self.payloads:
            self.payloads[key] = f"stream {key}\n".encode() * 64
        return self.payloads[key]

    def estimate_size(self, snapshot, parent=None):
        return len(self.payload(snapshot, parent))

    def send_command(self, snapshot, parent=None):
        self.sent.append((snapshot.name, parent.name if parent else None))
        path = self.tmp_path / f"stream-{len(self.sent)}.bin"
        path.write_bytes(self.payload(snapshot, parent))
        exit_code = self.exit_codes.get(snapshot.dataset, 0)
        return [sys.executable, '-c', EXPORT_SCRIPT, str(path), str(exit_code)]


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def zfs(tmp_path):
    return FakeZfs(tmp_path)


@pytest.fixture
def sleeps():
    """Collects backoff delays instead of sleeping."""
    return []


@pytest.fixture
def config(tmp_path):
    return Config(
        aws_region='us-east-1',
        pools={'tank': PoolConfig(bucket='backup-bucket', datasets=['tank/data', 'tank/home'])},
        upload_settings=UploadConfig(part_size_mb=5, pipe_depth=2, stale_upload_hours=24),
        retry_settings=RetryConfig(max_retries=2, initial_backoff_seconds=1,
                                   max_backoff_seconds=4, backoff_multiplier=2),
        logging={'file': str(tmp_path / 'sync.log')},
    )
