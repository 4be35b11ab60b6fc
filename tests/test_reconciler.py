"""Tests for the drive reconciliation loop."""
import sys
import os
import time
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pools.errors import AgentCommunicationError
from pools.events import PoolEventBus
from pools.models import LiveDrive, Pool, PoolDetail, PoolDrive, PoolSummary, mount_path_for
from pools.reconciler import RECONCILE_JOB_ID, DriveReconciler, start_reconciler
from pools.store import PoolStore

GUID = "11111111-1111-1111-1111-111111111111"


@pytest.fixture
def store(tmp_path):
    return PoolStore(str(tmp_path / "backy.db"))


@pytest.fixture
def events():
    bus = PoolEventBus()
    bus.received = []
    bus.subscribe(bus.received.append)
    return bus


@pytest.fixture
def agent():
    agent = MagicMock()
    agent.get_drives.return_value = [
        LiveDrive(serial="S1", vendor="WDC", model="WD40", size=4000, device_path="/dev/disk/by-id/ata-S1"),
        LiveDrive(serial="S2", vendor="WDC", model="WD40", size=4000, device_path="/dev/disk/by-id/ata-S2"),
    ]
    agent.get_pools.return_value = [PoolSummary(guid=GUID, pool_id="md0", status="active", mounted=True)]
    agent.get_pool_detail.return_value = PoolDetail(
        success=True, state="active", pool_status="clean", size=8000, used=100, available=7900, use_percent="1%")
    return agent


def seed(store, state="ready", enabled=True):
    pool = store.create_pool(Pool(
        guid=GUID,
        label="media",
        mount_path=mount_path_for(GUID),
        enabled=enabled,
        state=state,
        drives=[PoolDrive(serial="S1", label="media-1"), PoolDrive(serial="S2", label="media-2")],
    ))
    return pool


def test_pool_missing_on_host_goes_offline(store, agent, events):
    seed(store)
    agent.get_pools.return_value = []

    report = DriveReconciler(store, agent, events).run_cycle()

    pool = store.get_pool(GUID)
    assert pool.pool_status == "Offline"
    assert pool.enabled is False
    assert report.offline_pools == [GUID]
    agent.get_pool_detail.assert_not_called()


def test_second_cycle_writes_nothing(store, agent, events):
    seed(store)
    first = DriveReconciler(store, agent, events).run_cycle()
    assert first.changed_pools == [GUID]

    wrapped = MagicMock(wraps=store)
    second = DriveReconciler(wrapped, agent, events).run_cycle()

    assert second.changed_pools == []
    wrapped.save_reconciliation.assert_not_called()
    assert len(events.received) == 1


def test_live_state_is_folded_in(store, agent, events):
    seed(store)

    DriveReconciler(store, agent, events).run_cycle()

    pool = store.get_pool(GUID)
    assert pool.pool_status == "clean"
    assert pool.state == "ready"
    assert pool.size == 8000
    assert pool.all_drives_connected is True
    assert all(d.connected and d.vendor == "WDC" for d in pool.drives)
    assert pool.drives[0].device_path == "/dev/disk/by-id/ata-S1"


def test_absent_drive_is_marked_disconnected_not_deleted(store, agent, events):
    seed(store)
    agent.get_drives.return_value = agent.get_drives.return_value[:1]

    DriveReconciler(store, agent, events).run_cycle()

    pool = store.get_pool(GUID)
    drives = {d.serial: d for d in pool.drives}
    assert drives["S1"].connected is True
    assert drives["S2"].connected is False
    assert pool.all_drives_connected is False


def test_duplicate_drive_rows_are_collapsed(store, agent, events):
    pool = seed(store)
    store.add_drive(GUID, PoolDrive(serial="S1", label="dup"))

    report = DriveReconciler(store, agent, events).run_cycle()

    drives = store.get_pool(GUID).drives
    assert [d.serial for d in drives] == ["S1", "S2"]
    assert drives[0].id == pool.drives[0].id
    assert report.removed_duplicates == 1


def test_creating_pool_is_left_alone(store, agent, events):
    seed(store, state="creating", enabled=False)
    agent.get_pools.return_value = []
    agent.get_drives.return_value = []

    report = DriveReconciler(store, agent, events).run_cycle()

    pool = store.get_pool(GUID)
    assert pool.state == "creating"
    assert pool.pool_status == ""
    assert all(not d.connected for d in pool.drives)
    assert report.changed_pools == []
    agent.get_pool_detail.assert_not_called()


def test_status_timeout_marks_offline(store, agent, events):
    seed(store)

    def slow_detail(guid, timeout=None):
        time.sleep(0.5)
        return PoolDetail(success=True, state="active", pool_status="clean")

    agent.get_pool_detail.side_effect = slow_detail
    reconciler = DriveReconciler(store, agent, events, status_timeout=0.05)

    reconciler.run_cycle()

    pool = store.get_pool(GUID)
    assert pool.pool_status == "Offline"
    assert pool.enabled is True
    reconciler.shutdown()


def test_status_failure_marks_offline(store, agent, events):
    seed(store)
    agent.get_pool_detail.side_effect = AgentCommunicationError("connection refused")

    DriveReconciler(store, agent, events).run_cycle()

    assert store.get_pool(GUID).pool_status == "Offline"


def test_offline_pool_recovers_once_agent_answers_again(store, agent, events):
    seed(store)
    healthy = agent.get_pool_detail.return_value
    agent.get_pool_detail.side_effect = [AgentCommunicationError("blip"), healthy, healthy, healthy]
    reconciler = DriveReconciler(store, agent, events)

    reconciler.run_cycle()
    assert store.get_pool(GUID).pool_status == "Offline"

    for _ in range(3):
        reconciler.run_cycle()

    pool = store.get_pool(GUID)
    assert pool.pool_status == "clean"
    assert pool.size == 8000
    assert pool.available == 7900
    assert agent.get_pool_detail.call_count == 4


def test_missing_pool_is_not_polled_in_the_same_cycle(store, agent, events):
    seed(store)
    store.update_pool(GUID, pool_status="Offline")
    agent.get_pools.return_value = []

    DriveReconciler(store, agent, events).run_cycle()

    agent.get_pool_detail.assert_not_called()
    assert store.get_pool(GUID).enabled is False


def test_mount_during_cycle_is_not_overwritten(store, agent, events):
    other = "22222222-2222-2222-2222-222222222222"
    seed(store, enabled=False)
    store.update_pool(GUID, pool_status="clean")
    store.create_pool(Pool(
        guid=other, label="backup", mount_path=mount_path_for(other), enabled=True, state="ready",
        drives=[PoolDrive(serial="S3", label="backup-1")],
    ))
    agent.get_pools.return_value = [PoolSummary(guid=GUID), PoolSummary(guid=other)]
    healthy = agent.get_pool_detail.return_value

    def mount_then_answer(guid, timeout=None):
        if guid == other:
            store.set_pool_mounted(GUID, True, pool_status="")
        return healthy

    agent.get_pool_detail.side_effect = mount_then_answer
    reconciler = DriveReconciler(store, agent, events)

    report = reconciler.run_cycle()

    pool = store.get_pool(GUID)
    assert pool.enabled is True
    assert pool.pool_status == ""
    assert GUID not in report.changed_pools
    assert store.get_pool(other).pool_status == "clean"

    reconciler.run_cycle()

    assert store.get_pool(GUID).pool_status == "clean"


def test_disabled_pool_reports_offline(store, agent, events):
    seed(store, enabled=False)

    DriveReconciler(store, agent, events).run_cycle()

    assert store.get_pool(GUID).pool_status == "Offline"
    agent.get_pool_detail.assert_not_called()


def test_pool_list_failure_skips_offline_marking(store, agent, events):
    seed(store)
    agent.get_pools.side_effect = AgentCommunicationError("timeout")

    report = DriveReconciler(store, agent, events).run_cycle()

    pool = store.get_pool(GUID)
    assert pool.enabled is True
    assert pool.pool_status == "clean"
    assert report.errors == ["timeout"]


def test_cycle_never_raises(store, agent, events):
    reconciler = DriveReconciler(store, agent, events)

    with patch.object(store, "list_pools", side_effect=RuntimeError("db gone")):
        report = reconciler.run_cycle()

    assert report.errors == ["db gone"]


def test_start_reconciler_registers_interval_job(store, agent, events):
    scheduler = MagicMock()
    reconciler = DriveReconciler(store, agent, events)

    start_reconciler(scheduler, reconciler, 120)

    scheduler.add_job.assert_called_once()
    args, kwargs = scheduler.add_job.call_args
    assert args == (reconciler.run_cycle, 'interval')
    assert kwargs["seconds"] == 120
    assert kwargs["max_instances"] == 1
    assert kwargs["id"] == RECONCILE_JOB_ID
