"""
Tests for the SQLite state database.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cartographer_agent._types import Device, DeviceType, HealthStatus
from cartographer_agent.state_db import AgentStateDB


@pytest.fixture
def db(tmp_path):
    return AgentStateDB(tmp_path / "nested" / "agent.db")


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestDevices:
    """Test the known-device cache."""

    def test_replace_and_get(self, db):
        db.replace_devices([
            Device(ip="192.168.1.20", mac="00:11:32:00:00:01", device_type=DeviceType.NAS,
                   response_time_ms=0.0, health=HealthStatus.HEALTHY),
            Device(ip="192.168.1.3", hostname="router.lan", response_time_ms=1.5),
        ])

        devices = db.get_devices()

        assert [d.ip for d in devices] == ["192.168.1.3", "192.168.1.20"]
        assert devices[1].device_type == DeviceType.NAS
        assert devices[1].health == HealthStatus.HEALTHY
        assert devices[1].response_time_ms == 0.0
        assert devices[0].hostname == "router.lan"

    def test_replace_drops_old_devices(self, db):
        db.replace_devices([Device(ip="10.0.0.1"), Device(ip="10.0.0.2")])
        db.replace_devices([Device(ip="10.0.0.3")])
        assert [d.ip for d in db.get_devices()] == ["10.0.0.3"]

    def test_clear_devices(self, db):
        db.replace_devices([Device(ip="10.0.0.1")])
        db.clear_devices()
        assert db.get_devices() == []


class TestSessions:
    """Test session history."""

    def test_session_lifecycle(self, db):
        db.create_session("s1", "scan", T0, "manual")
        assert db.get_latest_session().status == "running"

        db.complete_session("s1", status="completed", devices_found=12, synced_to_cloud=True)

        record = db.get_latest_session("scan")
        assert record.id == "s1"
        assert record.status == "completed"
        assert record.devices_found == 12
        assert record.synced_to_cloud is True
        assert record.triggered_by == "manual"
        assert record.completed_at is not None

    def test_history_newest_first_and_filtered(self, db):
        db.create_session("s1", "scan", T0, "scheduled")
        db.create_session("h1", "health", T0 + timedelta(minutes=1), "scheduled")
        db.create_session("s2", "scan", T0 + timedelta(minutes=2), "manual")

        assert [r.id for r in db.get_session_history()] == ["s2", "h1", "s1"]
        assert [r.id for r in db.get_session_history(kind="scan")] == ["s2", "s1"]
        assert [r.id for r in db.get_session_history(limit=1)] == ["s2"]

    def test_failed_session_keeps_error(self, db):
        db.create_session("s1", "scan", T0, "scheduled")
        db.complete_session("s1", status="failed", error_message="No active IPv4 interface found")
        assert db.get_latest_session().error_message == "No active IPv4 interface found"


class TestStateAndPreferences:
    """Test key-value state and preferences."""

    def test_last_scan_time(self, db):
        assert db.get_last_scan_time() is None
        db.set_last_scan_time(T0)
        assert db.get_last_scan_time() == T0

    def test_preferences_json(self, db):
        db.set_preference("interval_minutes", 15)
        db.set_preference("notifications_enabled", False)
        assert db.get_preferences() == {"interval_minutes": 15, "notifications_enabled": False}

    def test_clear_all_keeps_preferences(self, db):
        db.replace_devices([Device(ip="10.0.0.1")])
        db.create_session("s1", "scan", T0, "manual")
        db.set_last_scan_time(T0)
        db.set_preference("interval_minutes", 30)

        db.clear_all()

        assert db.get_devices() == []
        assert db.get_session_history() == []
        assert db.get_last_scan_time() is None
        assert db.get_preferences() == {"interval_minutes": 30}

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "agent.db"
        AgentStateDB(path).set_last_scan_time(T0)
        assert AgentStateDB(path).get_last_scan_time() == T0
