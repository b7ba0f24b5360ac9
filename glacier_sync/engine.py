"""Sync engine: plan every configured dataset and stream what is missing to S3."""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from .checksum import choose_part_size
from .exceptions import SyncError
from .export_runner import ExportRunner
from .models import Dataset, RemoteRecord, SyncPlan, SyncResult, SyncStatus, UploadSession
from .pipe import ChunkPipe
from .planner import SyncPlanner
from .remote_state import RemoteState, RemoteStateReader, dataset_key_prefixes, object_key
from .uploader import MultipartUploadCoordinator
from .zfs import ZfsCommands

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Results of one sync run, in processing order."""
    results: List[SyncResult] = field(default_factory=list)
    dry_run: bool = False

    def _with_status(self, status: SyncStatus) -> List[SyncResult]:
        return [r for r in self.results if r.status == status]

    @property
    def synced(self) -> List[SyncResult]:
        return self._with_status(SyncStatus.SYNCED)

    @property
    def skipped(self) -> List[SyncResult]:
        return self._with_status(SyncStatus.SKIPPED)

    @property
    def planned(self) -> List[SyncResult]:
        return self._with_status(SyncStatus.PLANNED)

    @property
    def failed(self) -> List[SyncResult]:
        return self._with_status(SyncStatus.FAILED)

    @property
    def bytes_uploaded(self) -> int:
        return sum(r.bytes_uploaded for r in self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class SyncEngine:
    """Drive planning, export and upload for the configured pools.

    Datasets are processed one after another. A failure is contained at
    the dataset boundary: it is logged, recorded in the report, and the
    remaining datasets still run. ``KeyboardInterrupt`` is the exception:
    the open upload is aborted and the interrupt propagates.

    Args:
        config: Loaded ``Config``
        s3_client: boto3 S3 client
        zfs: ZfsCommands; built from ``config.export`` when omitted
        dry_run: Plan and estimate only, never export or upload
        progress: Show a tqdm progress bar per upload
        sleep: Sleep function used for retry backoff
    """

    def __init__(self, config, s3_client, zfs: Optional[ZfsCommands] = None,
                 dry_run: bool = False, progress: bool = True, sleep=time.sleep):
        self.config = config
        self.s3_client = s3_client
        self.zfs = zfs or ZfsCommands.from_config(config.export)
        self.dry_run = dry_run
        self.progress = progress
        self.sleep = sleep

    def selected_pools(self, pools: Optional[Iterable[str]] = None) -> List[Tuple[str, object]]:
        """Configured pools in config order, optionally filtered by name."""
        wanted = set(pools or [])
        unknown = wanted - set(self.config.pools)
        if unknown:
            raise SyncError(f"Pool(s) not in configuration: {', '.join(sorted(unknown))}")
        return [(name, pool) for name, pool in self.config.pools.items()
                if not wanted or name in wanted]

    def dataset_names(self, pool_name: str, pool, datasets: Optional[Iterable[str]] = None) -> List[str]:
        """Datasets of a pool in processing order."""
        names = list(pool.datasets) or self.zfs.list_datasets(pool_name)
        if datasets:
            wanted = set(datasets)
            names = [name for name in names if name in wanted]
        return names

    def remote_state(self, pool) -> RemoteState:
        return RemoteStateReader(self.s3_client, pool.bucket, pool.prefix).read()

    def run(self, pools: Optional[Iterable[str]] = None,
            datasets: Optional[Iterable[str]] = None) -> SyncReport:
        """Sync every selected dataset and return the per-dataset outcome."""
        report = SyncReport(dry_run=self.dry_run)
        mode = "[DRY RUN] " if self.dry_run else ""

        for pool_name, pool in self.selected_pools(pools):
            logger.info(f"{mode}Pool {pool_name} -> s3://{pool.bucket}/{pool.prefix or ''}")
            try:
                names = self.dataset_names(pool_name, pool, datasets)
                state = self.remote_state(pool)
            except (SyncError, ClientError, BotoCoreError) as e:
                logger.error(f"✗ Pool {pool_name}: {e}")
                report.results.append(SyncResult(pool_name, SyncStatus.FAILED, error=str(e)))
                continue

            planner = SyncPlanner(pool.snapshot_pattern)
            coordinator = MultipartUploadCoordinator.from_config(
                self.s3_client, pool.bucket, self.config.retry_settings,
                max_parts=self.config.upload_settings.max_parts, sleep=self.sleep
            )
            for name in names:
                result = self.sync_dataset(pool_name, pool, name, planner, coordinator,
                                           state.for_dataset(name))
                report.results.append(result)

        if datasets:
            seen = {r.dataset for r in report.results}
            for name in sorted(set(datasets) - seen):
                logger.warning(f"Dataset {name} is not part of any selected pool")

        logger.info(
            f"{mode}Run finished: {len(report.synced)} synced, {len(report.skipped)} up to date, "
            f"{len(report.planned)} planned, {len(report.failed)} failed"
        )
        return report

    def sync_dataset(self, pool_name: str, pool, name: str, planner: SyncPlanner,
                     coordinator: MultipartUploadCoordinator,
                     records: Dict[str, RemoteRecord]) -> SyncResult:
        start_time = time.time()
        plan: Optional[SyncPlan] = None
        try:
            dataset = Dataset(name, pool_name, self.zfs.list_snapshots(name))
            plan = planner.plan(dataset, records)
            logger.info(f"{name}: {plan.describe()} ({plan.reason})")

            if plan.is_noop:
                return SyncResult(name, SyncStatus.SKIPPED, plan=plan,
                                  elapsed=time.time() - start_time)

            if self.dry_run:
                coordinator.reconcile_pending(
                    name, dataset_key_prefixes(name, pool.prefix),
                    timedelta(hours=self.config.upload_settings.stale_upload_hours),
                    dry_run=True,
                )
                estimate = self.zfs.estimate_size(plan.snapshot, plan.parent)
                return SyncResult(name, SyncStatus.PLANNED, plan=plan, estimated_size=estimate,
                                  elapsed=time.time() - start_time)

            record = self.upload(pool, plan, coordinator)
            elapsed = time.time() - start_time
            logger.info(f"✓ {name}: uploaded {record.size} bytes to {record.key} in {elapsed:.1f}s")
            return SyncResult(name, SyncStatus.SYNCED, plan=plan, record=record,
                              bytes_uploaded=record.size, elapsed=elapsed)

        except Exception as e:
            logger.error(f"✗ {name}: {e}")
            logger.debug(f"Failure details for {name}", exc_info=True)
            return SyncResult(name, SyncStatus.FAILED, plan=plan, error=str(e),
                              elapsed=time.time() - start_time)

    def upload(self, pool, plan: SyncPlan, coordinator: MultipartUploadCoordinator) -> RemoteRecord:
        """Stream the planned export into a new multipart upload.

        The export's exit status is checked after its output is fully
        consumed and before the upload is finalized, so a late failure
        never produces a remote object.
        """
        settings = self.config.upload_settings
        snapshot, parent = plan.snapshot, plan.parent
        parent_name = parent.name if parent is not None else None
        key = object_key(plan.dataset, snapshot.name, parent_name, pool.prefix)

        aborted = coordinator.reconcile_pending(
            plan.dataset, dataset_key_prefixes(plan.dataset, pool.prefix),
            timedelta(hours=settings.stale_upload_hours),
        )
        if aborted:
            logger.info(f"{plan.dataset}: aborted {aborted} stale upload(s)")

        estimate = self.zfs.estimate_size(snapshot, parent)
        if estimate is None:
            logger.warning(f"{plan.dataset}: no size estimate, uploads larger than "
                           f"{settings.part_size_bytes * settings.max_parts} bytes will fail")
        part_size = choose_part_size(estimate, settings.part_size_bytes, settings.max_parts)
        command = self.zfs.send_command(snapshot, parent)
        logger.debug(f"{plan.dataset}: estimated {estimate} bytes, part size {part_size}")

        metadata = {
            'snapshot': snapshot.name,
            'parent': parent_name or 'full',
            'creation-date': snapshot.created_at.isoformat(),
            'backup-cmd': ' '.join(command),
            'part-size': str(part_size),
        }
        tags = {
            'parent': parent_name or 'full',
            'creation_date': snapshot.created_at.isoformat(),
        }

        session = coordinator.open_session(plan.dataset, key, snapshot.name, parent_name,
                                           metadata=metadata, tags=tags)
        pipe = None
        try:
            with ExportRunner(command) as runner:
                pipe = ChunkPipe(runner.stdout, part_size, depth=settings.pipe_depth)
                with pipe, tqdm(total=estimate, unit='B', unit_scale=True, desc=plan.dataset,
                                leave=False, disable=not self.progress) as pbar:
                    for chunk in pipe:
                        coordinator.upload_part(session, chunk.part_number, chunk.data, chunk.md5)
                        pbar.update(chunk.size)
                runner.check()
            return coordinator.finalize_session(session)
        except BaseException:
            self._abort(coordinator, session)
            raise
        finally:
            if pipe is not None and not pipe.join():
                logger.warning(f"{plan.dataset}: chunk reader thread did not exit")

    def _abort(self, coordinator: MultipartUploadCoordinator, session: UploadSession):
        if not session.is_open:
            return
        try:
            coordinator.abort_session(session)
        except Exception as e:
            logger.error(f"Could not abort upload {session.key} ({session.upload_id}): {e}")
