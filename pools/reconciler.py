"""Periodic reconciliation of stored pools and drives against the agent."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import PoolError
from .events import PoolEventBus
from .models import OFFLINE_STATUS, LiveDrive, Pool, PoolDrive, detail_changes
from .store import PoolStore

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = 'drive_reconciliation'


@dataclass
class ReconcileReport:
    """Summary of one reconciliation cycle."""
    changed_pools: List[str] = field(default_factory=list)
    offline_pools: List[str] = field(default_factory=list)
    removed_duplicates: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def changes_made(self) -> bool:
        return bool(self.changed_pools)


@dataclass
class _PendingChanges:
    snapshots: Dict[str, Tuple[bool, str]] = field(default_factory=dict)
    pools: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    drives: Dict[str, Dict[int, Dict[str, Any]]] = field(default_factory=dict)
    deleted_drives: Dict[str, List[int]] = field(default_factory=dict)
    changed: Set[str] = field(default_factory=set)

    def track(self, pool: Pool) -> None:
        self.snapshots[pool.guid] = (pool.enabled, pool.state)

    def delete_drive(self, pool: Pool, drive: PoolDrive) -> None:
        self.deleted_drives.setdefault(pool.guid, []).append(drive.id)
        self.changed.add(pool.guid)

    def set_pool(self, pool: Pool, **fields: Any) -> None:
        for key, value in fields.items():
            if getattr(pool, key) != value:
                setattr(pool, key, value)
                self.pools.setdefault(pool.guid, {})[key] = value
                self.changed.add(pool.guid)

    def set_drive(self, pool: Pool, drive: PoolDrive, **fields: Any) -> None:
        for key, value in fields.items():
            if getattr(drive, key) != value:
                setattr(drive, key, value)
                self.drives.setdefault(pool.guid, {}).setdefault(drive.id, {})[key] = value
                self.changed.add(pool.guid)


class DriveReconciler:
    """
    Folds live agent state into the metadata store.

    Pools still in 'creating' belong to their creation monitor; apart from
    duplicate-row cleanup the reconciler leaves them alone.
    """

    def __init__(
        self,
        store: PoolStore,
        agent,
        events: PoolEventBus,
        status_timeout: float = 5.0,
        max_workers: int = 4,
    ):
        self.store = store
        self.agent = agent
        self.events = events
        self.status_timeout = status_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='pool-status')
        self._lock = threading.Lock()

    def run_cycle(self) -> ReconcileReport:
        """Run one cycle. Never raises."""
        if not self._lock.acquire(blocking=False):
            logger.info("Drive reconciliation already running, skipping")
            return ReconcileReport(skipped=True)
        try:
            return self._reconcile()
        except Exception as e:
            logger.exception("Error refreshing drive data")
            return ReconcileReport(errors=[str(e)])
        finally:
            self._lock.release()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _reconcile(self) -> ReconcileReport:
        report = ReconcileReport()

        live_drives = self._fetch_live_drives(report)
        live_guids = self._fetch_live_pool_guids(report)
        pools = self.store.list_pools()
        logger.debug(f"Reconciling {len(pools)} pool(s)")

        pending = _PendingChanges()
        for pool in pools:
            try:
                self._reconcile_pool(pool, live_drives, live_guids, pending, report)
            except Exception as e:
                logger.exception(f"Error reconciling pool {pool.guid}", extra={"pool_guid": pool.guid, "operation": "reconcile"})
                report.errors.append(f"{pool.guid}: {e}")

        if not (pending.pools or pending.drives or pending.deleted_drives):
            logger.debug("Drive data refresh completed. No changes detected.")
            return report

        written = self.store.save_reconciliation(
            pending.snapshots, pending.pools, pending.drives, pending.deleted_drives)
        report.changed_pools = sorted(set(written) & pending.changed)
        report.offline_pools = [guid for guid in report.offline_pools if guid in written]
        logger.info(f"Drive data refresh saved changes for {len(report.changed_pools)} pool(s)")
        for guid in report.changed_pools:
            self.events.publish(guid, "reconciled")
        return report

    def _fetch_live_drives(self, report: ReconcileReport) -> Optional[Dict[str, LiveDrive]]:
        try:
            return {drive.serial: drive for drive in self.agent.get_drives()}
        except PoolError as e:
            logger.error(f"Could not list drives from agent: {e.message}")
            report.errors.append(e.message)
            return None

    def _fetch_live_pool_guids(self, report: ReconcileReport) -> Optional[Set[str]]:
        try:
            return {summary.guid for summary in self.agent.get_pools() if summary.guid}
        except PoolError as e:
            logger.error(f"Error retrieving pools from agent, keeping stored pools as they are: {e.message}")
            report.errors.append(e.message)
            return None

    def _reconcile_pool(
        self,
        pool: Pool,
        live_drives: Optional[Dict[str, LiveDrive]],
        live_guids: Optional[Set[str]],
        pending: _PendingChanges,
        report: ReconcileReport,
    ) -> None:
        pending.track(pool)
        was_offline = pool.pool_status == OFFLINE_STATUS
        self._collapse_duplicates(pool, pending, report)

        if pool.is_creating:
            logger.debug(f"Skipping pool {pool.guid} in 'creating' state")
            return

        if live_guids is not None and pool.guid.lower() not in live_guids:
            if pool.enabled or pool.pool_status != OFFLINE_STATUS:
                logger.warning(f"Pool {pool.label} ({pool.guid}) exists in the database but not on the host. Marking as offline.")
            pending.set_pool(pool, pool_status=OFFLINE_STATUS, enabled=False)

        if live_drives is not None:
            all_connected = True
            for drive in pool.drives:
                live = live_drives.get(drive.serial)
                if live is None:
                    pending.set_drive(pool, drive, connected=False)
                    all_connected = False
                    continue
                pending.set_drive(
                    pool, drive,
                    connected=True,
                    vendor=live.vendor,
                    model=live.model,
                    mounted=live.mounted,
                    device_path=live.device_path,
                    size=live.size,
                )
            pending.set_pool(pool, all_drives_connected=all_connected)

        # A pool found missing above is disabled by now, so it is not polled this cycle.
        if not pool.enabled:
            pending.set_pool(pool, pool_status=OFFLINE_STATUS)
        else:
            self._refresh_status(pool, pending)

        if not was_offline and pool.pool_status == OFFLINE_STATUS:
            report.offline_pools.append(pool.guid)

    def _collapse_duplicates(self, pool: Pool, pending: _PendingChanges, report: ReconcileReport) -> None:
        kept: Dict[str, PoolDrive] = {}
        for drive in sorted(pool.drives, key=lambda d: d.id or 0):
            if drive.serial in kept:
                pending.delete_drive(pool, drive)
                report.removed_duplicates += 1
                logger.warning(f"Pool {pool.label} has duplicate drive {drive.serial}; removing row {drive.id}")
            else:
                kept[drive.serial] = drive
        pool.drives = list(kept.values())

    def _refresh_status(self, pool: Pool, pending: _PendingChanges) -> None:
        future = self._executor.submit(self.agent.get_pool_detail, pool.guid, self.status_timeout)
        try:
            detail = future.result(timeout=self.status_timeout)
        except FutureTimeoutError:
            logger.warning(f"Status fetch for pool {pool.label} ({pool.guid}) timed out. Marking as Offline.")
            pending.set_pool(pool, pool_status=OFFLINE_STATUS)
            return
        except PoolError as e:
            logger.error(f"Error fetching status for pool {pool.label}: {e.message}. Marking as Offline.")
            pending.set_pool(pool, pool_status=OFFLINE_STATUS)
            return

        if not detail.success:
            logger.warning(f"Agent reported no status for pool {pool.label}: {detail.message}. Marking as Offline.")
            pending.set_pool(pool, pool_status=OFFLINE_STATUS)
            return
        pending.set_pool(pool, **detail_changes(pool, detail))


def start_reconciler(scheduler, reconciler: DriveReconciler, interval_seconds: int = 60):
    """Register the reconciliation cycle as an interval job on an APScheduler scheduler."""
    return scheduler.add_job(
        reconciler.run_cycle,
        'interval',
        seconds=interval_seconds,
        id=RECONCILE_JOB_ID,
        name='Drive Reconciliation',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
