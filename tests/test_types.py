"""
Tests for domain types.
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from cartographer_agent._types import (
    AgentStatus,
    Credentials,
    Device,
    DeviceHealthResult,
    DeviceType,
    HealthCheckResult,
    HealthStatus,
    NetworkInfo,
    ScanStage,
)


class TestDevice:
    """Test the device record."""

    def test_round_trip(self):
        device = Device(
            ip="192.168.1.10",
            mac="00:11:32:00:00:01",
            hostname="nas.local",
            vendor="Synology Incorporated",
            device_type=DeviceType.NAS,
            response_time_ms=2.5,
            health=HealthStatus.HEALTHY,
        )
        assert Device.from_dict(device.to_dict()) == device

    def test_passive(self):
        assert Device(ip="10.0.0.1", response_time_ms=0.0).is_passive
        assert not Device(ip="10.0.0.1", response_time_ms=1.0).is_passive
        assert not Device(ip="10.0.0.1").is_passive

    def test_sort_key_is_numeric(self):
        devices = [Device(ip="10.0.0.10"), Device(ip="10.0.0.9")]
        assert [d.ip for d in sorted(devices, key=lambda d: d.ip_key)] == ["10.0.0.9", "10.0.0.10"]

    def test_naive_timestamp_treated_as_utc(self):
        data = {"ip": "10.0.0.1", "last_seen_at": "2026-01-01T00:00:00"}
        assert Device.from_dict(data).last_seen_at.tzinfo == timezone.utc


class TestHealthCheckResult:
    """Test health summary counts."""

    def test_counts_add_up(self):
        result = HealthCheckResult(results=[
            DeviceHealthResult("10.0.0.1", HealthStatus.HEALTHY, 5.0),
            DeviceHealthResult("10.0.0.2", HealthStatus.DEGRADED, 150.0),
            DeviceHealthResult("10.0.0.3", HealthStatus.OFFLINE),
        ])
        assert result.total_devices == 3
        assert result.healthy_devices == 2
        assert result.unreachable_devices == 1
        assert result.healthy_devices + result.unreachable_devices == result.total_devices
        assert (result.healthy, result.degraded, result.offline) == (1, 1, 1)
        assert result.to_dict()["degraded_devices"] == 1


class TestMisc:
    """Test small value types."""

    def test_network_info(self):
        info = NetworkInfo(interface="eth0", subnet="192.168.1.0/24")
        assert info.network.num_addresses == 256
        assert info.to_dict()["gateway_ip"] is None

    def test_terminal_stages(self):
        assert ScanStage.COMPLETE.terminal
        assert ScanStage.FAILED.terminal
        assert not ScanStage.PING_SWEEP.terminal

    def test_agent_status_frozen(self):
        status = AgentStatus()
        with pytest.raises(dataclasses.FrozenInstanceError):
            status.authenticated = True

    def test_agent_status_serializes_dates(self):
        when = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert AgentStatus(last_scan=when).to_dict()["last_scan"] == when.isoformat()

    def test_credentials_expiry(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        creds = Credentials(access_token="a", network_id="n", expires_at=now + timedelta(seconds=1))
        assert not creds.is_expired(now)
        assert creds.is_expired(now + timedelta(seconds=1))
        assert not Credentials(access_token="a", network_id="n").is_expired(now)

    def test_credentials_round_trip(self):
        creds = Credentials(
            access_token="a", network_id="n", refresh_token="r",
            expires_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        assert Credentials.from_dict(creds.to_dict()) == creds
