"""Data models for pool lifecycle management."""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


MOUNT_ROOT = "/mnt/backy"
OFFLINE_STATUS = "Offline"


class PoolState(Enum):
    """Lifecycle states the orchestrator acts on.

    The agent may report other states (``degraded``, ``resyncing``...); those
    are stored verbatim and treated as non-terminal.
    """
    CREATING = "creating"
    READY = "ready"
    FAILED = "failed"
    ERROR = "error"


# The agent reports a finished array as "active"
READY_STATES = {PoolState.READY.value, "active"}
FAILED_STATES = {PoolState.FAILED.value, PoolState.ERROR.value}


class PoolAction(Enum):
    """Destructive actions that can be blocked by a busy mount point."""
    UNMOUNT = "UnmountPool"
    REMOVE = "RemovePoolGroup"

    @classmethod
    def parse(cls, value: str) -> Optional["PoolAction"]:
        for action in cls:
            if action.value.lower() == (value or "").strip().lower():
                return action
        return None


def mount_path_for(guid: str) -> str:
    """Derive the mount path for a pool. Never trust a stored path over this."""
    return MOUNT_ROOT + "/" + str(guid)


def normalize_state(value: Optional[str]) -> str:
    return (value or "").strip().lower()


@dataclass
class PoolDrive:
    """A physical drive's membership in a pool."""
    serial: str
    label: str
    vendor: str = "Unknown Vendor"
    model: str = "Unknown Model"
    size: int = 0
    connected: bool = False
    mounted: bool = False
    device_path: str = ""
    id: Optional[int] = None
    pool_id: Optional[int] = None


@dataclass
class Pool:
    """One aggregated storage volume as recorded in the metadata store."""
    guid: str
    label: str
    mount_path: str
    enabled: bool = False
    state: str = PoolState.CREATING.value
    pool_status: str = ""
    size: int = 0
    used: int = 0
    available: int = 0
    use_percent: str = "0%"
    all_drives_connected: bool = True
    drives: List[PoolDrive] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def is_creating(self) -> bool:
        return normalize_state(self.state) == PoolState.CREATING.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProtectedDrive:
    """A drive excluded from any pool-destructive operation."""
    serial: str
    vendor: str = "Unknown Vendor"
    model: str = "Unknown Model"
    name: Optional[str] = None
    label: Optional[str] = None
    id: Optional[int] = None


@dataclass
class LiveDrive:
    """A block device as currently reported by the agent."""
    serial: str
    name: str = "Unknown"
    label: Optional[str] = None
    vendor: str = "Unknown Vendor"
    model: str = "Unknown Model"
    size: int = 0
    device_path: str = ""
    mounted: bool = False
    protected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PoolDriveDetail:
    """Drive entry inside an agent pool detail response."""
    serial: str
    label: str = ""
    status: str = "unknown"
    path: str = ""


@dataclass
class PoolDetail:
    """Live pool detail from the agent."""
    success: bool
    message: str = ""
    state: str = ""
    pool_status: str = ""
    size: int = 0
    used: int = 0
    available: int = 0
    use_percent: str = "0%"
    mount_path: str = ""
    drives: List[PoolDriveDetail] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PoolDetail":
        """
        Build a detail object from the agent's JSON body.

        Older agents only send ``status``; in that case it doubles as the
        lifecycle state.

        Args:
            payload: Decoded JSON object

        Returns:
            PoolDetail with success=True
        """
        status = str(payload.get("status") or "")
        state = payload.get("state")
        if state is None:
            state = status
        drives = [
            PoolDriveDetail(
                serial=str(item.get("serial") or ""),
                label=str(item.get("label") or ""),
                status=str(item.get("status") or "unknown"),
                path=str(item.get("path") or ""),
            )
            for item in payload.get("drives") or []
            if isinstance(item, dict)
        ]
        return cls(
            success=True,
            message=str(payload.get("message") or ""),
            state=normalize_state(state),
            pool_status=status,
            size=_as_int(payload.get("size")),
            used=_as_int(payload.get("used")),
            available=_as_int(payload.get("available")),
            use_percent=str(payload.get("usePercent") or "0%"),
            mount_path=str(payload.get("mountPath") or ""),
            drives=drives,
        )

    @classmethod
    def failed(cls, message: str) -> "PoolDetail":
        return cls(success=False, message=message)


@dataclass
class PoolSummary:
    """Entry of the agent's pool list."""
    guid: str
    pool_id: str = ""
    label: str = ""
    status: str = "unknown"
    mount_path: str = ""
    mounted: bool = False
    drive_count: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PoolSummary":
        return cls(
            guid=str(payload.get("poolGroupGuid") or "").lower(),
            pool_id=str(payload.get("poolId") or ""),
            label=str(payload.get("label") or ""),
            status=str(payload.get("status") or "unknown"),
            mount_path=str(payload.get("mountPath") or ""),
            mounted=bool(payload.get("isMounted", False)),
            drive_count=_as_int(payload.get("driveCount")),
        )


@dataclass
class ProcessInfo:
    """A process holding a mount point open."""
    pid: int
    user: str = ""
    command: str = ""
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessInfo":
        return cls(
            pid=_as_int(payload.get("pid")),
            user=str(payload.get("user") or ""),
            command=str(payload.get("command") or ""),
            name=str(payload.get("name") or ""),
        )


@dataclass
class MountPointSize:
    size: int = 0
    used: int = 0
    available: int = 0
    use_percent: str = "0%"


@dataclass
class AgentResult:
    """Outcome of a privileged command executed by the agent."""
    success: bool
    message: str = ""
    outputs: List[str] = field(default_factory=list)


@dataclass
class OperationResult:
    """Structured result returned by every orchestrator operation."""
    success: bool
    message: str
    error: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)
    pool: Optional[Pool] = None

    @classmethod
    def ok(cls, message: str, **kwargs) -> "OperationResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failure(cls, message: str, error: str = "error", **kwargs) -> "OperationResult":
        return cls(success=False, message=message, error=error, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": "success" if self.success else "error",
            "message": self.message,
        }
        if self.error:
            payload["error"] = self.error
        if self.outputs:
            payload["outputs"] = list(self.outputs)
        if self.detail:
            payload.update(self.detail)
        if self.pool is not None:
            payload["pool"] = self.pool.to_dict()
        return payload


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def detail_changes(pool: Pool, detail: PoolDetail, include_state: bool = True) -> Dict[str, Any]:
    """
    Fold a successful agent detail into a stored pool.

    Returns only the columns whose value differs, so an unchanged pool
    yields an empty dict. ``state`` is never touched while the pool is
    still being created.
    """
    wanted: Dict[str, Any] = {
        "size": detail.size,
        "used": detail.used,
        "available": detail.available,
        "use_percent": detail.use_percent,
        "pool_status": detail.pool_status,
    }
    if include_state and detail.state and not pool.is_creating:
        wanted["state"] = PoolState.READY.value if detail.state in READY_STATES else detail.state
    return {key: value for key, value in wanted.items() if getattr(pool, key) != value}
