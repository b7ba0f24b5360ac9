"""Decide per dataset whether to send nothing, an incremental or a full export."""

import logging
import re
import warnings
from typing import Dict, List, Optional, Pattern, Union

from .exceptions import BrokenChainWarning
from .models import Dataset, RemoteRecord, Snapshot, SyncAction, SyncPlan
from .remote_state import chain_is_complete

logger = logging.getLogger(__name__)


class SyncPlanner:
    """Compute a SyncPlan from local snapshot history and remote records.

    Only the newest eligible snapshot is ever sent: the backup mirrors the
    current state of a dataset, not its full history.

    Args:
        snapshot_pattern: Regex a snapshot name must match (``re.search``)
            to be sent. Any local snapshot can still act as incremental basis.
    """

    def __init__(self, snapshot_pattern: Optional[Union[str, Pattern]] = None):
        if isinstance(snapshot_pattern, str):
            snapshot_pattern = re.compile(snapshot_pattern)
        self.snapshot_pattern = snapshot_pattern

    def eligible(self, snapshots: List[Snapshot]) -> List[Snapshot]:
        if self.snapshot_pattern is None:
            return list(snapshots)
        return [s for s in snapshots if self.snapshot_pattern.search(s.name)]

    def plan(self, dataset: Dataset, records: Dict[str, RemoteRecord]) -> SyncPlan:
        eligible = self.eligible(dataset.snapshots)
        if not eligible:
            return SyncPlan(dataset.name, SyncAction.NOOP, reason='no eligible snapshots')

        newest = eligible[-1]

        if not records:
            return SyncPlan(dataset.name, SyncAction.FULL, snapshot=newest,
                            reason='no remote backup')

        current = records.get(newest.name)
        if current is not None and chain_is_complete(current, records):
            return SyncPlan(dataset.name, SyncAction.NOOP, snapshot=newest,
                            reason='up to date')

        basis = self._find_basis(dataset, newest, records)
        if basis is not None:
            return SyncPlan(dataset.name, SyncAction.INCREMENTAL, snapshot=newest,
                            parent=basis, reason=f"remote has {basis.name}")

        if current is not None:
            message = (f"{dataset.name}: remote chain of {newest.name} is broken, "
                       f"sending {newest.name} in full")
        else:
            known = ', '.join(sorted(records))
            message = (f"{dataset.name}: no usable incremental basis (remote has {known}), "
                       f"sending {newest.name} in full")
        warnings.warn(message, BrokenChainWarning, stacklevel=2)
        return SyncPlan(dataset.name, SyncAction.FULL, snapshot=newest,
                        reason='broken chain', warnings=[message])

    def _find_basis(self, dataset: Dataset, newest: Snapshot,
                    records: Dict[str, RemoteRecord]) -> Optional[Snapshot]:
        """Newest local snapshot older than ``newest`` with a usable remote record."""
        older = dataset.snapshots[:dataset.snapshots.index(newest)]
        for snapshot in reversed(older):
            record = records.get(snapshot.name)
            if record is None:
                continue
            if chain_is_complete(record, records):
                return snapshot
            logger.debug(f"{dataset.name}: remote chain of {snapshot.name} is incomplete")
        return None

    def plan_all(self, datasets: List[Dataset],
                 records_by_dataset: Dict[str, Dict[str, RemoteRecord]]) -> List[SyncPlan]:
        """Plans in the same order as ``datasets``."""
        return [self.plan(ds, records_by_dataset.get(ds.name, {})) for ds in datasets]
