"""Remote state: completed uploads listed from S3 and parsed into RemoteRecords.

Object keys carry everything needed to rebuild state, so no index file
is kept anywhere:

    [prefix/]full/<dataset>@<snapshot>
    [prefix/]incremental/<dataset>@<snapshot>@<parent>

ZFS does not allow ``@`` inside dataset or snapshot names, which makes
the key unambiguous.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .models import RemoteRecord

logger = logging.getLogger(__name__)

FULL_DIR = 'full'
INCREMENTAL_DIR = 'incremental'


def _normalize_prefix(prefix: Optional[str]) -> str:
    prefix = (prefix or '').strip('/')
    return f"{prefix}/" if prefix else ''


def object_key(dataset: str, snapshot: str, parent: Optional[str] = None,
               prefix: Optional[str] = None) -> str:
    """S3 key for a full (no parent) or incremental export."""
    base = _normalize_prefix(prefix)
    if parent is None:
        return f"{base}{FULL_DIR}/{dataset}@{snapshot}"
    return f"{base}{INCREMENTAL_DIR}/{dataset}@{snapshot}@{parent}"


def dataset_key_prefixes(dataset: str, prefix: Optional[str] = None) -> Tuple[str, str]:
    """Key prefixes under which any export of ``dataset`` is stored."""
    base = _normalize_prefix(prefix)
    return (
        f"{base}{FULL_DIR}/{dataset}@",
        f"{base}{INCREMENTAL_DIR}/{dataset}@",
    )


def parse_object_key(key: str, prefix: Optional[str] = None) -> Optional[Tuple[str, str, Optional[str]]]:
    """Split a key into (dataset, snapshot, parent), or None if foreign."""
    base = _normalize_prefix(prefix)
    if not key.startswith(base):
        return None
    kind, sep, rest = key[len(base):].partition('/')
    if not sep:
        return None
    fields = rest.split('@')
    if not all(fields):
        return None
    if kind == FULL_DIR and len(fields) == 2:
        return fields[0], fields[1], None
    if kind == INCREMENTAL_DIR and len(fields) == 3:
        return fields[0], fields[1], fields[2]
    return None


def chain_is_complete(record: RemoteRecord, records: Dict[str, RemoteRecord]) -> bool:
    """True if following parents from ``record`` ends at a full export."""
    seen = set()
    while record.parent is not None:
        if record.snapshot in seen:
            return False
        seen.add(record.snapshot)
        parent = records.get(record.parent)
        if parent is None:
            return False
        record = parent
    return True


def resolve_candidates(candidates: Dict[str, List[RemoteRecord]]) -> Dict[str, RemoteRecord]:
    """Pick one record per snapshot when several exports of it exist.

    A full export wins. Otherwise an incremental whose parent resolves
    to a complete chain wins over one that does not; among equals the
    first by key is kept.
    """
    resolved = {}
    for snapshot, records in candidates.items():
        full = [r for r in records if not r.is_incremental]
        if full:
            resolved[snapshot] = full[0]

    changed = True
    while changed:
        changed = False
        for snapshot, records in candidates.items():
            if snapshot in resolved:
                continue
            for record in records:
                if record.parent in resolved:
                    resolved[snapshot] = record
                    changed = True
                    break

    for snapshot, records in candidates.items():
        resolved.setdefault(snapshot, records[0])
    return resolved


class RemoteState:
    """RemoteRecords of one bucket, grouped by dataset then snapshot name."""

    def __init__(self, records: Optional[Dict[str, Dict[str, RemoteRecord]]] = None):
        self.records = records or {}

    def for_dataset(self, dataset: str) -> Dict[str, RemoteRecord]:
        return dict(self.records.get(dataset, {}))

    def has(self, dataset: str, snapshot: str) -> bool:
        return snapshot in self.records.get(dataset, {})

    def datasets(self):
        return sorted(self.records)

    def add(self, record: RemoteRecord):
        self.records.setdefault(record.dataset, {})[record.snapshot] = record

    def __len__(self) -> int:
        return sum(len(by_snapshot) for by_snapshot in self.records.values())


def parse_remote_records(objects: Iterable[dict], prefix: Optional[str] = None) -> RemoteState:
    """Build RemoteState from ``list_objects_v2`` entries.

    Several exports of one snapshot are resolved by ``resolve_candidates``:
    a full one first, then one whose chain reaches a full export.
    """
    candidates: Dict[str, Dict[str, List[RemoteRecord]]] = {}
    for obj in objects:
        key = obj['Key']
        parsed = parse_object_key(key, prefix)
        if parsed is None:
            logger.debug(f"Ignoring foreign object: {key}")
            continue
        dataset, snapshot, parent = parsed
        record = RemoteRecord(
            dataset=dataset,
            snapshot=snapshot,
            parent=parent,
            size=int(obj.get('Size', 0)),
            key=key,
            etag=(obj.get('ETag') or '').strip('"') or None,
        )
        candidates.setdefault(dataset, {}).setdefault(snapshot, []).append(record)

    state = RemoteState()
    for dataset, by_snapshot in candidates.items():
        for snapshot in by_snapshot:
            by_snapshot[snapshot].sort(key=lambda r: r.key)
        state.records[dataset] = resolve_candidates(by_snapshot)
    return state


class RemoteStateReader:
    """List completed uploads in a bucket and parse them.

    Only completed multipart uploads show up in object listings, so an
    interrupted or aborted upload never produces a record.
    """

    def __init__(self, s3_client, bucket: str, prefix: Optional[str] = None):
        self.s3_client = s3_client
        self.bucket = bucket
        self.prefix = prefix

    def iter_objects(self) -> Iterator[dict]:
        paginator = self.s3_client.get_paginator('list_objects_v2')
        kwargs = {'Bucket': self.bucket}
        if _normalize_prefix(self.prefix):
            kwargs['Prefix'] = _normalize_prefix(self.prefix)
        for page in paginator.paginate(**kwargs):
            for obj in page.get('Contents', []):
                yield obj

    def read(self) -> RemoteState:
        state = parse_remote_records(self.iter_objects(), self.prefix)
        logger.info(f"Found {len(state)} remote backup(s) in s3://{self.bucket}/{_normalize_prefix(self.prefix)}")
        return state
