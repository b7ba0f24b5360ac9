"""ZFS Glacier Sync - stream ZFS snapshots into S3 multipart uploads.

Provides planning, checksum-verified streaming and upload of ZFS
snapshots to S3 cold storage.
"""

from .engine import SyncEngine, SyncReport
from .exceptions import (
    BrokenChainWarning,
    CommandError,
    ExportProcessError,
    IntegrityMismatchError,
    NetworkError,
    PlanningError,
    SessionStateError,
    SyncError,
)
from .models import (
    Dataset,
    RemoteRecord,
    Snapshot,
    SyncAction,
    SyncPlan,
    SyncResult,
    SyncStatus,
    UploadSession,
)
from .planner import SyncPlanner

__version__ = '1.0.0'
__all__ = [
    'SyncEngine',
    'SyncReport',
    'SyncPlanner',
    'Dataset',
    'Snapshot',
    'SyncAction',
    'SyncPlan',
    'SyncResult',
    'SyncStatus',
    'RemoteRecord',
    'UploadSession',
    'SyncError',
    'PlanningError',
    'BrokenChainWarning',
    'ExportProcessError',
    'IntegrityMismatchError',
    'NetworkError',
    'SessionStateError',
    'CommandError',
]
