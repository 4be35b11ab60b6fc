from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.logging import current_request_id
from pools.models import OperationResult

pools_api = Blueprint('pools_api', __name__)

HTTP_STATUS = {
    'validation': 400,
    'not_found': 404,
    'protected': 409,
    'busy': 409,
    'persistence': 500,
    'internal': 500,
    'agent_operation': 502,
    'agent_communication': 503,
}


def _orchestrator():
    return current_app.extensions['pool_orchestrator']


def _respond(result: OperationResult, success_status: int = 200):
    payload = result.to_dict()
    if result.success:
        return jsonify(payload), success_status
    request_id = current_request_id()
    if request_id:
        payload['request_id'] = request_id
    return jsonify(payload), HTTP_STATUS.get(result.error or '', 500)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@pools_api.route('/api/health', methods=['GET'])
def api_health():
    result = _orchestrator().get_agent_status()
    return _respond(result)


@pools_api.route('/api/drives', methods=['GET'])
def api_list_drives():
    return _respond(_orchestrator().list_drives())


@pools_api.route('/api/drives/protected', methods=['GET'])
def api_list_protected_drives():
    return _respond(_orchestrator().list_protected_drives())


@pools_api.route('/api/drives/<serial>/protect', methods=['POST'])
def api_protect_drive(serial):
    return _respond(_orchestrator().protect_drive(serial), 201)


@pools_api.route('/api/drives/<serial>/protect', methods=['DELETE'])
def api_unprotect_drive(serial):
    return _respond(_orchestrator().unprotect_drive(serial))


@pools_api.route('/api/pools', methods=['GET'])
def api_list_pools():
    return _respond(_orchestrator().list_pools())


@pools_api.route('/api/pools', methods=['POST'])
def api_create_pool():
    """Start asynchronous pool creation; poll GET /api/pools/<guid>/status for monitor progress."""
    data = _json_body()
    serials = data.get('drive_serials') or data.get('driveSerials') or []
    labels = data.get('drive_labels') or data.get('driveLabels') or {}
    if not isinstance(serials, list) or not isinstance(labels, dict):
        return _respond(OperationResult.failure(
            'drive_serials must be a list and drive_labels an object', error='validation'))
    result = _orchestrator().create_pool(data.get('label', ''), serials, labels)
    return _respond(result, 202)


@pools_api.route('/api/pools/<guid>', methods=['GET'])
def api_pool_detail(guid):
    return _respond(_orchestrator().get_pool_detail(guid))


@pools_api.route('/api/pools/<guid>/status', methods=['GET'])
def api_pool_status(guid):
    """Stored record plus the creation monitor session, without calling the agent."""
    return _respond(_orchestrator().get_pool(guid))


@pools_api.route('/api/pools/<guid>/usage', methods=['GET'])
def api_pool_usage(guid):
    return _respond(_orchestrator().get_pool_usage(guid))


@pools_api.route('/api/pools/<guid>', methods=['PATCH'])
def api_rename_pool(guid):
    data = _json_body()
    labels = data.get('drive_labels') or {}
    if not isinstance(labels, dict):
        return _respond(OperationResult.failure('drive_labels must be an object', error='validation'))
    return _respond(_orchestrator().rename_pool_group(guid, data.get('label', ''), labels))


@pools_api.route('/api/pools/<guid>/outputs', methods=['GET'])
def api_pool_outputs(guid):
    return _respond(_orchestrator().get_pool_outputs(guid))


@pools_api.route('/api/pools/<guid>/processes', methods=['GET'])
def api_pool_processes(guid):
    return _respond(_orchestrator().get_processes_using_pool(guid))


@pools_api.route('/api/pools/<guid>/mount', methods=['POST'])
def api_mount_pool(guid):
    return _respond(_orchestrator().mount_pool(guid))


@pools_api.route('/api/pools/<guid>/unmount', methods=['POST'])
def api_unmount_pool(guid):
    return _respond(_orchestrator().unmount_pool(guid))


@pools_api.route('/api/pools/<guid>/remove', methods=['POST'])
def api_remove_pool(guid):
    return _respond(_orchestrator().remove_pool_group(guid))


@pools_api.route('/api/pools/<guid>/drives/<int:drive_id>/force-add', methods=['POST'])
def api_force_add_drive(guid, drive_id):
    data = _json_body()
    return _respond(_orchestrator().force_add_drive(drive_id, guid, data.get('device_path')))


@pools_api.route('/api/pools/<guid>/kill-processes', methods=['POST'])
def api_kill_processes(guid):
    data = _json_body()
    pids = data.get('pids') or []
    if not isinstance(pids, list):
        return _respond(OperationResult.failure('pids must be a list', error='validation'))
    return _respond(_orchestrator().kill_processes_and_retry(pids, guid, data.get('action', '')))


@pools_api.route('/api/pools/<guid>/monitor', methods=['DELETE'])
def api_cancel_monitor(guid):
    return _respond(_orchestrator().cancel_creation_monitor(guid))
