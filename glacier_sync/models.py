"""Data model for snapshots, sync plans, remote records and upload sessions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time ZFS snapshot of a dataset."""
    dataset: str
    name: str
    creation: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.creation, tz=timezone.utc)

    def __str__(self) -> str:
        return self.full_name


@dataclass
class Dataset:
    """ZFS filesystem or volume with its snapshots ordered oldest to newest."""
    name: str
    pool: str
    snapshots: List[Snapshot] = field(default_factory=list)

    @property
    def newest(self) -> Optional[Snapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def get_snapshot(self, name: str) -> Optional[Snapshot]:
        for snapshot in self.snapshots:
            if snapshot.name == name:
                return snapshot
        return None


class SyncAction(str, Enum):
    NOOP = 'noop'
    FULL = 'full'
    INCREMENTAL = 'incremental'


@dataclass
class SyncPlan:
    """What to send for one dataset during this run."""
    dataset: str
    action: SyncAction
    snapshot: Optional[Snapshot] = None
    parent: Optional[Snapshot] = None
    reason: str = ''
    warnings: List[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.action == SyncAction.NOOP

    def describe(self) -> str:
        if self.action == SyncAction.FULL:
            return f"full {self.snapshot.name}"
        if self.action == SyncAction.INCREMENTAL:
            return f"incremental {self.parent.name} -> {self.snapshot.name}"
        return 'nothing to send'


@dataclass(frozen=True)
class RemoteRecord:
    """A snapshot export that was completely committed to object storage."""
    dataset: str
    snapshot: str
    parent: Optional[str]
    size: int
    key: str
    etag: Optional[str] = None

    @property
    def is_incremental(self) -> bool:
        return self.parent is not None


@dataclass
class UploadPart:
    """One uploaded part and the integrity token the store returned for it."""
    part_number: int
    size: int
    etag: str


class SessionState(str, Enum):
    OPEN = 'open'
    FINALIZED = 'finalized'
    ABORTED = 'aborted'


@dataclass
class UploadSession:
    """In-progress multipart upload for a single dataset."""
    dataset: str
    bucket: str
    key: str
    upload_id: str
    state: SessionState = SessionState.OPEN
    parts: List[UploadPart] = field(default_factory=list)
    snapshot: Optional[str] = None
    parent: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    @property
    def bytes_uploaded(self) -> int:
        return sum(part.size for part in self.parts)


class SyncStatus(str, Enum):
    SYNCED = 'synced'
    SKIPPED = 'skipped'
    PLANNED = 'planned'
    FAILED = 'failed'


@dataclass
class SyncResult:
    """Outcome of syncing one dataset."""
    dataset: str
    status: SyncStatus
    plan: Optional[SyncPlan] = None
    record: Optional[RemoteRecord] = None
    error: Optional[str] = None
    bytes_uploaded: int = 0
    estimated_size: Optional[int] = None
    elapsed: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == SyncStatus.FAILED
