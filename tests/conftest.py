"""
Shared fixtures and fakes for agent tests.
"""

import asyncio
from typing import Optional

import pytest

from cartographer_agent._types import (
    Credentials,
    Device,
    LoginFlowResponse,
    NetworkInfo,
    ScanResult,
    SyncResult,
    TokenResult,
    TokenStatus,
    now_utc,
)
from cartographer_agent.config import AgentConfig
from cartographer_agent.credential_store import CredentialStore
from cartographer_agent.exceptions import CloudAuthError, ScanCancelled
from cartographer_agent.progress import ProgressBroadcaster


TEST_NETWORK = NetworkInfo(
    interface="eth0",
    subnet="192.168.1.0/24",
    gateway_ip="192.168.1.1",
    local_ip=None,
)


@pytest.fixture
def config(tmp_path):
    """Agent config with short timeouts and a temp state dir."""
    return AgentConfig(
        state_dir=tmp_path / "state",
        cloud_api_url="http://localhost:9/api",
        probe_timeout=0.2,
        probe_workers=16,
        hostname_timeout=0.2,
    )


@pytest.fixture
def credential_store(tmp_path):
    return CredentialStore(state_dir=tmp_path / "creds", machine_id="test-machine-id")


@pytest.fixture
def sample_credentials():
    return Credentials(
        access_token="access-1",
        refresh_token="refresh-1",
        network_id="net-123",
        network_name="Home",
        user_email="user@example.com",
    )


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


class FakeARP:
    """Stands in for ARPDiscovery."""

    def __init__(self, devices: Optional[list[Device]] = None, error: Optional[Exception] = None,
                 table_ips: Optional[set[str]] = None):
        self.devices = devices or []
        self.error = error
        self.table_ips = table_ips if table_ips is not None else {d.ip for d in self.devices}

    async def discover(self, network, token=None):
        if self.error:
            raise self.error
        return [d.with_updates() for d in self.devices]

    async def read_ips(self, network=None):
        if self.error:
            raise self.error
        return set(self.table_ips)


class FakeResolver:
    """Stands in for HostnameResolver."""

    def __init__(self, names: Optional[dict[str, str]] = None):
        self.names = names or {}

    async def resolve_all(self, devices, token=None, on_result=None):
        resolved = []
        for device in devices:
            name = self.names.get(device.ip)
            if on_result:
                on_result(device.ip, name)
            if name and not device.hostname:
                device = device.with_updates(hostname=name)
            resolved.append(device)
        return resolved

    def close(self):
        pass


def make_probe(latencies: dict[str, Optional[float]], delay: float = 0.0):
    """Probe answering from a table; unknown addresses do not answer."""
    async def probe(ip: str) -> Optional[float]:
        if delay:
            await asyncio.sleep(delay)
        return latencies.get(ip)
    return probe


def arp_devices(count: int, start: int = 10) -> list[Device]:
    return [
        Device(
            ip=f"192.168.1.{start + i}",
            mac=f"00:11:32:00:00:{i:02x}",
            response_time_ms=0.0,
        )
        for i in range(count)
    ]


class FakeEngine:
    """Discovery engine replacement for scheduler tests."""

    def __init__(self, devices: Optional[list[Device]] = None, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.broadcaster = ProgressBroadcaster("scan")
        self.devices = devices if devices is not None else arp_devices(3)
        self.delay = delay
        self.error = error
        self.calls = 0

    async def run_scan(self, token, session_id=None):
        self.calls += 1
        if self.delay:
            try:
                await asyncio.wait_for(token.wait(), timeout=self.delay)
            except asyncio.TimeoutError:
                pass
        if token.cancelled:
            raise ScanCancelled(token.reason or "cancelled")
        if self.error:
            raise self.error
        return ScanResult(
            devices=[d.with_updates() for d in self.devices],
            network_info=TEST_NETWORK,
            started_at=now_utc(),
        )

    def close(self):
        pass


class FakeGateway:
    """In-memory cloud gateway driven by a fake clock."""

    def __init__(self, clock=None, grant_at: Optional[float] = None, deny: bool = False,
                 credentials: Optional[Credentials] = None):
        self.clock = clock or (lambda: 0.0)
        self.grant_at = grant_at
        self.deny = deny
        self.credentials = credentials or Credentials(
            access_token="access-1",
            refresh_token="refresh-1",
            network_id="net-123",
            network_name="Home",
            user_email="user@example.com",
        )
        self.polls: list[float] = []
        self.refresh_calls = 0
        self.refresh_fails = False
        self.valid_tokens = {self.credentials.access_token}
        self.uploads: list[tuple[str, str, object]] = []
        self.closed = False

    async def request_device_code(self):
        return LoginFlowResponse(
            verification_url="https://cartographer.network/activate",
            user_code="ABCD-1234",
            device_code="device-xyz",
            expires_in=600,
            poll_interval=5,
        )

    async def poll_token(self, device_code):
        self.polls.append(self.clock())
        if self.deny:
            return TokenResult(status=TokenStatus.DENIED)
        if self.grant_at is not None and self.clock() >= self.grant_at:
            return TokenResult(status=TokenStatus.GRANTED, credentials=self.credentials)
        return TokenResult(status=TokenStatus.PENDING)

    async def refresh_token(self, credentials):
        self.refresh_calls += 1
        if self.refresh_fails:
            raise CloudAuthError("refresh rejected")
        fresh = Credentials(
            access_token=f"access-{self.refresh_calls + 1}",
            refresh_token=credentials.refresh_token,
            network_id=credentials.network_id,
            network_name=credentials.network_name,
            user_email=credentials.user_email,
        )
        self.valid_tokens = {fresh.access_token}
        return fresh

    def _check(self, token):
        if token not in self.valid_tokens:
            raise CloudAuthError("token rejected")

    async def verify_token(self, access_token):
        self._check(access_token)
        return {"valid": True}

    async def upload_scan(self, access_token, network_id, result):
        self._check(access_token)
        self.uploads.append(("scan", network_id, result))
        return SyncResult(accepted=True)

    async def upload_health(self, access_token, network_id, result):
        self._check(access_token)
        self.uploads.append(("health", network_id, result))
        return SyncResult(accepted=True)

    async def close(self):
        self.closed = True
