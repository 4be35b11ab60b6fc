"""
Pool lifecycle orchestration.

Every public method returns an OperationResult. Expected failures are raised
internally as PoolError subclasses and converted at the method boundary;
anything unexpected is logged with the pool GUID and turned into a generic
failure.
"""

import logging
import uuid
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .creation_monitor import CreationMonitorRegistry
from .errors import (
    AgentCommunicationError,
    AgentOperationError,
    NotFoundError,
    PersistenceError,
    PoolBusyError,
    PoolError,
    ProtectedResourceError,
    ValidationError,
)
from .events import PoolEventBus
from .models import (
    OperationResult,
    Pool,
    PoolAction,
    PoolDrive,
    PoolState,
    ProtectedDrive,
    detail_changes,
    mount_path_for,
)
from .store import PoolStore

logger = logging.getLogger(__name__)


def _text(value: Any, what: str) -> str:
    """Strip a caller-supplied string; None counts as empty."""
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f"{what} must be a string")
    return value.strip()


def _mapping(value: Any, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{what} must be an object")
    return value


class PoolOrchestrator:
    """Coordinates the metadata store, the agent and the creation monitors."""

    def __init__(
        self,
        store: PoolStore,
        agent,
        events: PoolEventBus,
        monitors: CreationMonitorRegistry,
    ):
        self.store = store
        self.agent = agent
        self.events = events
        self.monitors = monitors

    # ------------------------------------------------------------------
    # boundary

    def _run(self, operation: str, guid: Optional[str], func: Callable[..., OperationResult], *args) -> OperationResult:
        try:
            return func(*args)
        except PoolError as e:
            logger.warning(
                f"{operation} failed for pool {guid}: {e.message}",
                extra={"pool_guid": guid, "operation": operation},
            )
            return OperationResult.failure(e.message, error=e.code, outputs=e.outputs)
        except Exception:
            logger.exception(
                f"Unexpected error during {operation} for pool {guid}",
                extra={"pool_guid": guid, "operation": operation},
            )
            return OperationResult.failure(f"Unexpected error during {operation}", error="internal")

    def _require_pool(self, guid: str, allow_creating: bool = False) -> Pool:
        pool = self.store.get_pool(guid)
        if pool is None:
            raise NotFoundError(f"Pool {guid} not found")
        if pool.is_creating and not allow_creating:
            raise PoolBusyError(f"Pool {guid} is still being created")
        return pool

    def _persist(self, guid: str, operation: str, write: Callable[[], Any]) -> Any:
        """Run a store write that follows a successful agent call."""
        try:
            return write()
        except PersistenceError as e:
            # The agent already acted; the reconciliation loop repairs the record.
            logger.error(
                f"{operation} succeeded on the agent but metadata update failed for {guid}: {e.message}",
                extra={"pool_guid": guid, "operation": operation},
            )
            return None

    # ------------------------------------------------------------------
    # creation

    def create_pool(
        self,
        label: str,
        drive_serials: Iterable[str],
        drive_labels: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        return self._run('create_pool', None, self._create_pool, label, drive_serials, drive_labels)

    def _create_pool(self, label, drive_serials, drive_labels) -> OperationResult:
        label = _text(label, "Pool label")
        if not label:
            raise ValidationError("Pool label is required")
        if isinstance(drive_serials, (str, Mapping)):
            raise ValidationError("Drive serials must be a list")
        serials = [s for s in (_text(s, "Drive serial") for s in drive_serials or []) if s]
        if not serials:
            raise ValidationError("At least one drive is required")
        if len(set(serials)) != len(serials):
            raise ValidationError("Each drive can only be added once")
        custom_labels = _mapping(drive_labels, "Drive labels")
        labels: Dict[str, str] = {}
        for index, serial in enumerate(serials, start=1):
            custom = _text(custom_labels.get(serial), f"Label for drive {serial}")
            labels[serial] = custom or f"{label}-{index}"

        protected = self.store.list_protected_serials()
        blocked = [s for s in serials if s in protected]
        if blocked:
            raise ProtectedResourceError(f"Cannot create pool with protected drive(s): {', '.join(blocked)}")

        live = {drive.serial: drive for drive in self.agent.get_drives()}
        missing = [s for s in serials if s not in live]
        if missing:
            raise ValidationError(f"Drive(s) not found: {', '.join(missing)}")

        guid = str(uuid.uuid4())
        mount_path = mount_path_for(guid)
        drives: List[PoolDrive] = []
        for serial in serials:
            live_drive = live[serial]
            drives.append(PoolDrive(
                serial=serial,
                label=labels[serial],
                vendor=live_drive.vendor,
                model=live_drive.model,
                size=live_drive.size,
                connected=True,
                mounted=False,
                device_path=live_drive.device_path,
            ))

        pool = self.store.create_pool(Pool(
            guid=guid,
            label=label,
            mount_path=mount_path,
            enabled=False,
            state=PoolState.CREATING.value,
            drives=drives,
        ))
        logger.info(f"Provisional pool {guid} recorded with {len(drives)} drive(s)",
                    extra={"pool_guid": guid, "operation": "create_pool"})

        try:
            result = self.agent.create_pool(label, serials, labels, guid)
        except AgentCommunicationError:
            self._discard(guid)
            raise
        if not result.success:
            self._discard(guid)
            raise AgentOperationError(result.message, outputs=result.outputs)

        _, started = self.monitors.start(guid)
        message = "Pool creation started" if started else "Pool creation already in progress"
        self.events.publish(guid, "creating")
        return OperationResult.ok(
            message,
            outputs=result.outputs,
            detail={"guid": guid, "mount_path": mount_path},
            pool=pool,
        )

    def _discard(self, guid: str) -> None:
        try:
            self.store.delete_pool(guid)
            logger.info(f"Removed provisional records for pool {guid}")
        except PersistenceError as e:
            logger.error(f"Failed to remove provisional records for pool {guid}: {e.message}")

    def resume_creation_monitors(self) -> OperationResult:
        """Restart monitoring for pools left in 'creating' by a previous process."""
        return self._run('resume_creation_monitors', None, self._resume_creation_monitors)

    def _resume_creation_monitors(self) -> OperationResult:
        resumed = []
        for pool in self.store.list_pools():
            if pool.is_creating:
                _, started = self.monitors.start(pool.guid)
                if started:
                    resumed.append(pool.guid)
        if resumed:
            logger.info(f"Resumed creation monitoring for {len(resumed)} pool(s)")
        return OperationResult.ok(f"Resumed monitoring for {len(resumed)} pool(s)", detail={"guids": resumed})

    def cancel_creation_monitor(self, guid: str) -> OperationResult:
        return self._run('cancel_creation_monitor', guid, self._cancel_creation_monitor, guid)

    def _cancel_creation_monitor(self, guid: str) -> OperationResult:
        if not self.monitors.cancel(guid):
            raise NotFoundError(f"No creation monitor running for pool {guid}")
        return OperationResult.ok("Creation monitoring cancelled")

    # ------------------------------------------------------------------
    # lifecycle

    def mount_pool(self, guid: str) -> OperationResult:
        return self._run('mount_pool', guid, self._mount_pool, guid)

    def _mount_pool(self, guid: str) -> OperationResult:
        self._require_pool(guid)
        path = mount_path_for(guid)
        result = self.agent.mount_pool(guid, path)
        if not result.success:
            raise AgentOperationError(result.message, outputs=result.outputs)

        # An empty status lets the next reconciliation cycle poll it again
        updated = self._persist(
            guid, 'mount_pool',
            lambda: self.store.set_pool_mounted(guid, True, mount_path=path, pool_status=''),
        )
        self.events.publish(guid, "mounted")
        return OperationResult.ok("Pool mounted successfully", outputs=result.outputs, pool=updated)

    def unmount_pool(self, guid: str) -> OperationResult:
        return self._run('unmount_pool', guid, self._unmount_pool, guid)

    def _unmount_pool(self, guid: str, prior_outputs: Iterable[str] = ()) -> OperationResult:
        self._require_pool(guid)
        result = self.agent.unmount_pool(guid)
        outputs = list(prior_outputs) + list(result.outputs)
        if not result.success:
            return self._blocked_failure(guid, result.message, outputs)

        updated = self._persist(guid, 'unmount_pool', lambda: self.store.set_pool_mounted(guid, False))
        self.events.publish(guid, "unmounted")
        return OperationResult.ok("Pool unmounted successfully", outputs=outputs, pool=updated)

    def remove_pool_group(self, guid: str) -> OperationResult:
        return self._run('remove_pool_group', guid, self._remove_pool_group, guid)

    def _remove_pool_group(self, guid: str, prior_outputs: Iterable[str] = ()) -> OperationResult:
        pool = self._require_pool(guid)
        outputs = list(prior_outputs)

        if pool.enabled:
            result = self.agent.remove_pool_group(guid)
            outputs.extend(result.outputs)
            if not result.success:
                return self._blocked_failure(guid, result.message, outputs)
            self._persist(guid, 'remove_pool_group', lambda: self.store.delete_pool(guid))
        else:
            self.store.delete_pool(guid)
            logger.info(f"Pool {guid} is disabled; removed metadata only")

        self.events.publish(guid, "removed")
        return OperationResult.ok("Pool removed successfully", outputs=outputs)

    def _blocked_failure(self, guid: str, message: str, outputs: List[str]) -> OperationResult:
        """Failure result for unmount/remove listing what holds the mount point."""
        try:
            processes = self.agent.get_processes_using_mount_point(mount_path_for(guid))
        except PoolError as e:
            logger.warning(f"Could not list processes using pool {guid}: {e.message}")
            processes = []
        return OperationResult.failure(
            message,
            error=AgentOperationError.code,
            outputs=outputs,
            detail={"processes": [asdict(p) for p in processes]},
        )

    def kill_processes_and_retry(self, pids: Iterable[Any], guid: str, action: str) -> OperationResult:
        return self._run('kill_processes_and_retry', guid, self._kill_processes_and_retry, pids, guid, action)

    def _kill_processes_and_retry(self, pids, guid: str, action: str) -> OperationResult:
        parsed = PoolAction.parse(action)
        if parsed is None:
            raise ValidationError(f"Unknown action: {action}")
        try:
            pid_list = [int(pid) for pid in pids or []]
        except (TypeError, ValueError):
            raise ValidationError("Process ids must be integers")
        if not pid_list:
            raise ValidationError("No process ids given")

        self._require_pool(guid)
        killed = self.agent.kill_processes(pid_list, guid, parsed.value)
        if not killed.success:
            raise AgentOperationError(killed.message, outputs=killed.outputs)
        logger.info(f"Killed {len(pid_list)} process(es) holding pool {guid}; retrying {parsed.value}")

        if parsed == PoolAction.UNMOUNT:
            return self._unmount_pool(guid, killed.outputs)
        return self._remove_pool_group(guid, killed.outputs)

    def rename_pool_group(
        self,
        guid: str,
        new_label: str,
        drive_labels: Optional[Mapping[Any, str]] = None,
    ) -> OperationResult:
        return self._run('rename_pool_group', guid, self._rename_pool_group, guid, new_label, drive_labels)

    def _rename_pool_group(self, guid: str, new_label: str, drive_labels) -> OperationResult:
        new_label = _text(new_label, "Pool label")
        if not new_label:
            raise ValidationError("Pool label is required")

        labels: Dict[int, str] = {}
        for drive_id, label in _mapping(drive_labels, "Drive labels").items():
            try:
                key = int(drive_id)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid drive id: {drive_id}")
            label = _text(label, f"Label for drive {drive_id}")
            if label:
                labels[key] = label

        pool = self.store.rename_pool(guid, new_label, labels)
        if pool is None:
            raise NotFoundError(f"Pool {guid} not found")
        self.events.publish(guid, "renamed")
        return OperationResult.ok("Pool renamed successfully", pool=pool)

    def force_add_drive(self, drive_id: int, guid: str, device_path: Optional[str] = None) -> OperationResult:
        return self._run('force_add_drive', guid, self._force_add_drive, drive_id, guid, device_path)

    def _force_add_drive(self, drive_id, guid: str, device_path: Optional[str]) -> OperationResult:
        pool = self._require_pool(guid)
        drive = next((d for d in pool.drives if d.id == drive_id), None)
        if drive is None:
            raise NotFoundError(f"Drive {drive_id} not found in pool {guid}")
        path = (device_path or drive.device_path or '').strip()
        if not path:
            raise ValidationError("Device path is required")

        result = self.agent.force_add_drive(drive_id, guid, path)
        if not result.success:
            raise AgentOperationError(result.message, outputs=result.outputs)

        self._persist(guid, 'force_add_drive', lambda: self.store.update_drive(drive_id, mounted=True))
        self.events.publish(guid, "drive_added")
        return OperationResult.ok(f"Drive {drive.serial} added to pool", outputs=result.outputs)

    # ------------------------------------------------------------------
    # reads

    def get_pool_detail(self, guid: str) -> OperationResult:
        """
        Fetch live detail from the agent and refresh the cached metrics.

        Reading is not side-effect free: size, usage and status are written
        back to the store whenever they differ from the cached values.
        """
        return self._run('get_pool_detail', guid, self._get_pool_detail, guid)

    def _get_pool_detail(self, guid: str) -> OperationResult:
        pool = self._require_pool(guid, allow_creating=True)
        detail = self.agent.get_pool_detail(guid)
        if not detail.success:
            raise AgentOperationError(detail.message)

        changes = detail_changes(pool, detail)
        if changes:
            self._persist(guid, 'get_pool_detail', lambda: self.store.update_pool(guid, **changes))
            pool = replace(pool, **changes)
            self.events.publish(guid, "refreshed")
        result = {"detail": asdict(detail)}
        session = self.monitors.get(guid)
        if session is not None:
            result["monitor"] = session.to_dict()
        return OperationResult.ok("Pool detail retrieved", detail=result, pool=pool)

    def get_pool_usage(self, guid: str) -> OperationResult:
        """Read filesystem usage at the pool's mount point and refresh the cached size metrics."""
        return self._run('get_pool_usage', guid, self._get_pool_usage, guid)

    def _get_pool_usage(self, guid: str) -> OperationResult:
        pool = self._require_pool(guid)
        if not pool.enabled:
            raise ValidationError(f"Pool {pool.label} is not mounted")

        usage = self.agent.get_mount_point_size(pool.mount_path)
        metrics = asdict(usage)
        changes = {key: value for key, value in metrics.items() if getattr(pool, key) != value}
        if changes:
            self._persist(guid, 'get_pool_usage', lambda: self.store.update_pool(guid, **changes))
            pool = replace(pool, **changes)
            self.events.publish(guid, "refreshed")
        return OperationResult.ok("Pool usage retrieved", detail={"usage": metrics}, pool=pool)

    def get_processes_using_pool(self, guid: str) -> OperationResult:
        return self._run('get_processes_using_pool', guid, self._get_processes_using_pool, guid)

    def _get_processes_using_pool(self, guid: str) -> OperationResult:
        self._require_pool(guid, allow_creating=True)
        processes = self.agent.get_processes_using_mount_point(mount_path_for(guid))
        return OperationResult.ok(
            f"{len(processes)} process(es) using pool",
            detail={"processes": [asdict(p) for p in processes]},
        )

    def get_pool_outputs(self, guid: str) -> OperationResult:
        return self._run('get_pool_outputs', guid, self._get_pool_outputs, guid)

    def _get_pool_outputs(self, guid: str) -> OperationResult:
        self._require_pool(guid, allow_creating=True)
        result = self.agent.get_pool_creation_outputs(guid)
        if not result.success:
            raise AgentOperationError(result.message, outputs=result.outputs)
        return OperationResult.ok("Pool outputs retrieved", outputs=result.outputs)

    def list_pools(self) -> OperationResult:
        return self._run('list_pools', None, self._list_pools)

    def _list_pools(self) -> OperationResult:
        pools = self.store.list_pools()
        return OperationResult.ok(f"{len(pools)} pool(s)", detail={"pools": [p.to_dict() for p in pools]})

    def get_pool(self, guid: str) -> OperationResult:
        return self._run('get_pool', guid, self._get_pool, guid)

    def _get_pool(self, guid: str) -> OperationResult:
        pool = self._require_pool(guid, allow_creating=True)
        detail = {}
        session = self.monitors.get(guid)
        if session is not None:
            detail["monitor"] = session.to_dict()
        return OperationResult.ok("Pool retrieved", detail=detail, pool=pool)

    # ------------------------------------------------------------------
    # drives

    def list_drives(self) -> OperationResult:
        return self._run('list_drives', None, self._list_drives)

    def _list_drives(self) -> OperationResult:
        drives = self.agent.get_drives()
        protected = self.store.list_protected_serials()
        for drive in drives:
            drive.protected = drive.serial in protected
        return OperationResult.ok(f"{len(drives)} drive(s)", detail={"drives": [d.to_dict() for d in drives]})

    def protect_drive(self, serial: str) -> OperationResult:
        return self._run('protect_drive', None, self._protect_drive, serial)

    def _protect_drive(self, serial: str) -> OperationResult:
        serial = (serial or '').strip()
        if not serial:
            raise ValidationError("Drive serial is required")
        live = next((d for d in self.agent.get_drives() if d.serial == serial), None)
        if live is None:
            raise NotFoundError(f"Drive {serial} not found")

        added = self.store.add_protected_drive(ProtectedDrive(
            serial=live.serial,
            vendor=live.vendor,
            model=live.model,
            name=live.name,
            label=live.label,
        ))
        if not added:
            raise ValidationError(f"Drive {serial} is already protected")
        logger.info(f"Drive {serial} protected")
        return OperationResult.ok(f"Drive {serial} protected")

    def unprotect_drive(self, serial: str) -> OperationResult:
        return self._run('unprotect_drive', None, self._unprotect_drive, serial)

    def _unprotect_drive(self, serial: str) -> OperationResult:
        if not self.store.remove_protected_drive((serial or '').strip()):
            raise NotFoundError(f"Drive {serial} is not protected")
        logger.info(f"Drive {serial} unprotected")
        return OperationResult.ok(f"Drive {serial} unprotected")

    def list_protected_drives(self) -> OperationResult:
        return self._run('list_protected_drives', None, self._list_protected_drives)

    def _list_protected_drives(self) -> OperationResult:
        drives = self.store.list_protected_drives()
        return OperationResult.ok(
            f"{len(drives)} protected drive(s)",
            detail={"drives": [asdict(d) for d in drives]},
        )

    def get_agent_status(self) -> OperationResult:
        if self.agent.get_status():
            return OperationResult.ok("Agent reachable")
        return OperationResult.failure("Agent unreachable", error=AgentCommunicationError.code)
