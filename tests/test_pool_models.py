"""Tests for pool data models and helpers."""
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pools.models import (
    OperationResult,
    Pool,
    PoolAction,
    PoolDetail,
    ProcessInfo,
    detail_changes,
    mount_path_for,
)


def test_mount_path_is_derived_from_guid():
    assert mount_path_for("11111111-1111-1111-1111-111111111111") == \
        "/mnt/backy/11111111-1111-1111-1111-111111111111"


def test_pool_action_parse_is_case_insensitive():
    assert PoolAction.parse("unmountpool") == PoolAction.UNMOUNT
    assert PoolAction.parse(" RemovePoolGroup ") == PoolAction.REMOVE
    assert PoolAction.parse("format") is None
    assert PoolAction.parse(None) is None


def test_detail_payload_falls_back_to_status_for_state():
    detail = PoolDetail.from_payload({"status": "Creating", "size": "100"})
    assert detail.state == "creating"
    assert detail.pool_status == "Creating"
    assert detail.size == 100


def test_detail_changes_only_reports_differences():
    pool = Pool(guid="g", label="p", mount_path="/mnt/backy/g", state="ready",
                pool_status="clean", size=10, used=5, available=5, use_percent="50%")
    detail = PoolDetail(success=True, state="ready", pool_status="clean",
                        size=10, used=6, available=4, use_percent="60%")

    assert detail_changes(pool, detail) == {"used": 6, "available": 4, "use_percent": "60%"}


def test_detail_changes_never_touch_state_while_creating():
    pool = Pool(guid="g", label="p", mount_path="/mnt/backy/g")
    detail = PoolDetail(success=True, state="degraded", pool_status="resyncing")

    changes = detail_changes(pool, detail)

    assert "state" not in changes
    assert changes["pool_status"] == "resyncing"


def test_operation_result_to_dict():
    failure = OperationResult.failure(
        "busy", error="agent_operation", outputs=["umount: target is busy"],
        detail={"processes": [{"pid": 1}]},
    )
    assert failure.to_dict() == {
        "status": "error",
        "message": "busy",
        "error": "agent_operation",
        "outputs": ["umount: target is busy"],
        "processes": [{"pid": 1}],
    }
    assert OperationResult.ok("done").to_dict() == {"status": "success", "message": "done"}


def test_process_info_from_payload_tolerates_bad_pid():
    assert ProcessInfo.from_payload({"pid": "abc"}).pid == 0
