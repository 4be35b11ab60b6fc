"""
Backy agent client.

The agent is a separate privileged service that owns mdadm, mkfs, mount and
process killing on the managed host. Everything here is a thin HTTP RPC
wrapper; no shell command is ever executed locally.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pools.errors import AgentCommunicationError, AgentOperationError
from pools.models import (
    AgentResult,
    LiveDrive,
    MountPointSize,
    PoolDetail,
    PoolSummary,
    ProcessInfo,
    mount_path_for,
)

logger = logging.getLogger(__name__)

API_PREFIX = '/api/v1'

# Disks whose partitions are mounted here belong to the host OS
SYSTEM_MOUNT_POINTS = {
    '/', '/boot', '/boot/efi', '/boot/firmware', '/home', '/var', '/usr', '[SWAP]'
}


@dataclass(frozen=True)
class AgentClientConfig:
    base_url: str
    api_key: str = ''
    timeout: float = 30.0
    max_retries: int = 3

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "AgentClientConfig":
        base_url = (config.get('BACKY_AGENT_URL') or 'http://localhost:5151').strip()
        return cls(
            base_url=base_url.rstrip('/'),
            api_key=str(config.get('BACKY_AGENT_API_KEY') or ''),
            timeout=float(config.get('BACKY_AGENT_TIMEOUT_SECONDS', 30.0) or 30.0),
            max_retries=int(config.get('BACKY_AGENT_MAX_RETRIES', 3) or 0),
        )


class AgentClient:
    """HTTP client for the privileged Backy agent."""

    def __init__(self, config: AgentClientConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or self._build_session(config)

    @property
    def config(self) -> AgentClientConfig:
        return self._config

    @staticmethod
    def _build_session(config: AgentClientConfig) -> requests.Session:
        session = requests.Session()
        # Only idempotent reads are retried; a replayed mount or kill is not safe
        retry = Retry(
            total=config.max_retries,
            backoff_factor=0.5,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(['GET']),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        if config.api_key:
            session.headers['X-Api-Key'] = config.api_key
        return session

    # ------------------------------------------------------------------
    # transport

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> requests.Response:
        url = f"{self._config.base_url}{API_PREFIX}{path}"
        try:
            return self._session.request(
                method,
                url,
                json=dict(payload) if payload is not None else None,
                timeout=timeout or self._config.timeout,
            )
        except requests.Timeout as exc:
            raise AgentCommunicationError(f'Agent request timed out: {method} {path}') from exc
        except requests.RequestException as exc:
            raise AgentCommunicationError(f'Failed to reach agent: {exc}') from exc

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise AgentCommunicationError('Invalid response from agent') from exc

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get('error')
            if isinstance(error, dict) and error.get('message'):
                details = error.get('details')
                return f"{error['message']}: {details}" if details else str(error['message'])
            for key in ('detail', 'message', 'title'):
                if body.get(key):
                    return str(body[key])
        return f'Error {response.status_code}: {response.reason}'

    def _command(
        self,
        method: str,
        path: str,
        action: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> AgentResult:
        response = self._request(method, path, payload)
        if response.status_code >= 400:
            message = f'Failed to {action}: {self._error_message(response)}'
            logger.warning(message)
            return AgentResult(success=False, message=message)

        body = self._json(response)
        if not isinstance(body, dict):
            raise AgentCommunicationError('Invalid response from agent')
        outputs = [str(line) for line in body.get('commandOutputs') or body.get('outputs') or []]
        success = bool(body.get('success', False))
        message = str(body.get('message') or '')
        if not message:
            message = f'{action.capitalize()} succeeded' if success else f'Failed to {action}'
        return AgentResult(success=success, message=message, outputs=outputs)

    def _read(self, path: str, what: str) -> Any:
        response = self._request('GET', path)
        if response.status_code >= 400:
            raise AgentOperationError(f'Failed to retrieve {what}: {self._error_message(response)}')
        return self._json(response)

    # ------------------------------------------------------------------
    # operations

    def get_status(self) -> bool:
        """Return True when the agent answers its status endpoint."""
        try:
            response = self._request('GET', '/status', timeout=5)
        except AgentCommunicationError:
            return False
        return response.status_code < 400

    def get_drives(self) -> List[LiveDrive]:
        body = self._read('/drives', 'drives')
        devices = body.get('blockdevices') if isinstance(body, dict) else None
        return [drive for drive in (_drive_from_device(d) for d in devices or []) if drive]

    def create_pool(
        self,
        label: str,
        serials: List[str],
        labels: Mapping[str, str],
        guid: str,
    ) -> AgentResult:
        """Start asynchronous pool creation under the given GUID."""
        payload = {
            'label': label,
            'driveSerials': list(serials),
            'driveLabels': dict(labels),
            'mountPath': mount_path_for(guid),
            'poolGroupGuid': guid,
        }
        logger.info(f"Sending pool creation request for {guid} with mount path {payload['mountPath']}")
        return self._command('POST', '/pools', 'create pool', payload)

    def get_pool_detail(self, guid: str, timeout: Optional[float] = None) -> PoolDetail:
        response = self._request('GET', f'/pools/guid/{guid}', timeout=timeout)
        if response.status_code == 404:
            return PoolDetail.failed('Pool not found')
        if response.status_code >= 400:
            return PoolDetail.failed(f'Failed to retrieve pool details: {self._error_message(response)}')
        body = self._json(response)
        if not isinstance(body, dict):
            raise AgentCommunicationError('Invalid response from agent')
        return PoolDetail.from_payload(body)

    def get_pools(self) -> List[PoolSummary]:
        body = self._read('/pools', 'pools')
        if isinstance(body, dict):
            body = body.get('pools') or []
        return [PoolSummary.from_payload(item) for item in body or [] if isinstance(item, dict)]

    def mount_pool(self, guid: str, path: str) -> AgentResult:
        return self._command('POST', f'/pools/guid/{guid}/mount', 'mount pool', {'mountPath': path})

    def unmount_pool(self, guid: str) -> AgentResult:
        return self._command('POST', f'/pools/guid/{guid}/unmount', 'unmount pool')

    def remove_pool_group(self, guid: str) -> AgentResult:
        return self._command('POST', f'/pools/guid/{guid}/remove', 'remove pool')

    def force_add_drive(self, drive_id: int, guid: str, device_path: str) -> AgentResult:
        payload = {'driveId': drive_id, 'devPath': device_path}
        return self._command('POST', f'/pools/guid/{guid}/drives/add', 'add drive to pool', payload)

    def kill_processes(self, pids: List[int], guid: str, action: str) -> AgentResult:
        payload = {'pids': list(pids), 'poolGroupGuid': guid, 'action': action}
        return self._command('POST', '/processes/kill', 'kill processes', payload)

    def get_pool_creation_outputs(self, guid: str) -> AgentResult:
        return self._command('GET', f'/pools/guid/{guid}/outputs', 'retrieve pool outputs')

    def get_mount_point_size(self, path: str) -> MountPointSize:
        body = self._read(f"/mounts/{quote(path, safe='')}/size", 'mount point size')
        if not isinstance(body, dict):
            return MountPointSize()
        return MountPointSize(
            size=int(body.get('size') or 0),
            used=int(body.get('used') or 0),
            available=int(body.get('available') or 0),
            use_percent=str(body.get('usePercent') or '0%'),
        )

    def get_processes_using_mount_point(self, path: str) -> List[ProcessInfo]:
        body = self._read(f"/mounts/{quote(path, safe='')}", 'processes')
        processes = body.get('processes') if isinstance(body, dict) else None
        return [ProcessInfo.from_payload(p) for p in processes or [] if isinstance(p, dict)]


def _drive_from_device(device: Dict[str, Any]) -> Optional[LiveDrive]:
    """Convert one lsblk-style block device into a LiveDrive, or None to skip it."""
    if not isinstance(device, dict) or device.get('type') != 'disk':
        return None

    mountpoints = [device.get('mountpoint')]
    mountpoints.extend(child.get('mountpoint') for child in device.get('children') or [])
    mountpoints = [m for m in mountpoints if m]
    if any(m in SYSTEM_MOUNT_POINTS for m in mountpoints):
        return None

    id_link = device.get('id-link')
    return LiveDrive(
        serial=device.get('serial') or 'No Serial',
        name=device.get('name') or 'Unknown',
        label=device.get('label'),
        vendor=(device.get('vendor') or 'Unknown Vendor').strip(),
        model=(device.get('model') or 'Unknown Model').strip(),
        size=int(device.get('size') or 0),
        device_path=f'/dev/disk/by-id/{id_link}' if id_link else (device.get('path') or ''),
        mounted=bool(mountpoints),
    )


__all__ = [
    'AgentClient',
    'AgentClientConfig',
]
