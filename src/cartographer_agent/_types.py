"""
Type definitions for the Cartographer agent.

These dataclasses define the domain model shared by discovery, health
checking, scheduling, authentication and cloud sync.
"""

from __future__ import annotations

import ipaddress
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class DeviceType(str, Enum):
    """Device category inferred from the hardware vendor."""
    FIREWALL = "firewall"
    ROUTER = "router"
    SERVICE = "service"      # Virtual machines and containers
    SERVER = "server"
    NAS = "nas"
    APPLE = "apple"
    IOT = "iot"
    PRINTER = "printer"
    GAMING = "gaming"
    MOBILE = "mobile"
    COMPUTER = "computer"
    UNKNOWN = "unknown"


class ScanStage(str, Enum):
    """Ordered stages of a discovery session."""
    STARTING = "starting"
    DETECTING_NETWORK = "detecting_network"
    READING_ARP = "reading_arp"
    PING_SWEEP = "ping_sweep"
    RESOLVING_HOSTNAMES = "resolving_hostnames"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ScanStage.COMPLETE, ScanStage.FAILED)


class HealthCheckStage(str, Enum):
    """Ordered stages of a health-check session."""
    STARTING = "starting"
    CHECKING_DEVICES = "checking_devices"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"        # Only reached when the session is cancelled

    @property
    def terminal(self) -> bool:
        return self in (HealthCheckStage.COMPLETE, HealthCheckStage.FAILED)


class HealthStatus(str, Enum):
    """Per-device reachability classification."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class TokenStatus(str, Enum):
    """Outcome of a single device-code token poll."""
    GRANTED = "granted"
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class Device:
    """
    A device observed on the local network.

    response_time_ms semantics:
        None  - never measured
        0.0   - known only from a passive record (ARP table)
        > 0   - latency of the last successful active probe
    """
    ip: str
    mac: Optional[str] = None
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    response_time_ms: Optional[float] = None
    health: Optional[HealthStatus] = None
    last_seen_at: datetime = field(default_factory=now_utc)

    @property
    def is_passive(self) -> bool:
        return self.response_time_ms == 0.0

    @property
    def ip_key(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Address(self.ip)

    def with_updates(self, **changes: Any) -> Device:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "vendor": self.vendor,
            "device_type": self.device_type.value,
            "response_time_ms": self.response_time_ms,
            "health": self.health.value if self.health else None,
            "last_seen_at": _iso(self.last_seen_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Device:
        return cls(
            ip=data["ip"],
            mac=data.get("mac"),
            hostname=data.get("hostname"),
            vendor=data.get("vendor"),
            device_type=DeviceType(data.get("device_type") or DeviceType.UNKNOWN.value),
            response_time_ms=data.get("response_time_ms"),
            health=HealthStatus(data["health"]) if data.get("health") else None,
            last_seen_at=_parse_dt(data.get("last_seen_at")) or now_utc(),
        )


@dataclass(frozen=True)
class NetworkInfo:
    """The primary IPv4 interface the agent scans from."""
    interface: str
    subnet: str                        # CIDR, e.g. "192.168.1.0/24"
    gateway_ip: Optional[str] = None
    local_ip: Optional[str] = None

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.subnet, strict=False)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanProgress:
    """Progress event emitted by a discovery session."""
    stage: ScanStage
    message: str
    percent: int
    devices_found: int
    elapsed_secs: float
    session_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


@dataclass
class ScanResult:
    """Output of a completed discovery session."""
    devices: list[Device]
    network_info: NetworkInfo
    started_at: datetime
    completed_at: datetime = field(default_factory=now_utc)
    arp_count: int = 0
    probed_count: int = 0
    session_id: Optional[str] = None
    synced_to_cloud: bool = False

    @property
    def devices_found(self) -> int:
        return len(self.devices)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class HealthCheckProgress:
    """Progress event emitted by a health-check session."""
    stage: HealthCheckStage
    message: str
    total_devices: int
    checked_devices: int
    healthy_devices: int
    synced_to_cloud: Optional[bool] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


@dataclass(frozen=True)
class DeviceHealthResult:
    """Reachability verdict for one device."""
    ip: str
    status: HealthStatus
    response_time_ms: Optional[float] = None

    @property
    def reachable(self) -> bool:
        return self.status != HealthStatus.OFFLINE

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "status": self.status.value,
            "reachable": self.reachable,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class HealthCheckResult:
    """
    Summary of a health-check session.

    healthy_devices counts every reachable device (healthy or degraded) so
    that healthy_devices + unreachable_devices == total_devices. The
    per-status breakdown is available through healthy/degraded/offline.
    """
    results: list[DeviceHealthResult]
    synced_to_cloud: bool = False
    started_at: datetime = field(default_factory=now_utc)
    completed_at: datetime = field(default_factory=now_utc)
    session_id: Optional[str] = None

    def _count(self, status: HealthStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def total_devices(self) -> int:
        return len(self.results)

    @property
    def healthy_devices(self) -> int:
        return sum(1 for r in self.results if r.reachable)

    @property
    def unreachable_devices(self) -> int:
        return self.total_devices - self.healthy_devices

    @property
    def healthy(self) -> int:
        return self._count(HealthStatus.HEALTHY)

    @property
    def degraded(self) -> int:
        return self._count(HealthStatus.DEGRADED)

    @property
    def offline(self) -> int:
        return self._count(HealthStatus.OFFLINE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_devices": self.total_devices,
            "healthy_devices": self.healthy_devices,
            "unreachable_devices": self.unreachable_devices,
            "degraded_devices": self.degraded,
            "synced_to_cloud": self.synced_to_cloud,
            "devices": [r.to_dict() for r in self.results],
        }


@dataclass
class SessionRecord:
    """Historical record of a scan or health-check session."""
    id: str
    kind: str                          # "scan" or "health"
    started_at: datetime
    triggered_by: str = "scheduled"
    completed_at: Optional[datetime] = None
    status: str = "running"            # running, completed, failed, cancelled
    devices_found: int = 0
    healthy_devices: int = 0
    unreachable_devices: int = 0
    synced_to_cloud: bool = False
    error_message: Optional[str] = None


@dataclass(frozen=True)
class AgentStatus:
    """Immutable snapshot of agent state handed to readers."""
    authenticated: bool = False
    user_email: Optional[str] = None
    network_id: Optional[str] = None
    network_name: Optional[str] = None
    last_scan: Optional[datetime] = None
    next_scan: Optional[datetime] = None
    device_count: int = 0
    scanning_in_progress: bool = False
    health_check_in_progress: bool = False
    last_scan_status: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_scan"] = _iso(self.last_scan)
        data["next_scan"] = _iso(self.next_scan)
        return data


@dataclass
class Credentials:
    """Tokens and identity obtained from the device-code flow."""
    access_token: str
    network_id: str
    network_name: Optional[str] = None
    user_email: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or now_utc()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = _iso(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credentials:
        return cls(
            access_token=data["access_token"],
            network_id=data["network_id"],
            network_name=data.get("network_name"),
            user_email=data.get("user_email"),
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_dt(data.get("expires_at")),
        )


@dataclass(frozen=True)
class LoginFlowResponse:
    """What the user needs to approve this agent in a browser."""
    verification_url: str
    user_code: str
    device_code: str
    expires_in: int
    poll_interval: int = 5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TokenResult:
    """Result of polling the token endpoint once."""
    status: TokenStatus
    credentials: Optional[Credentials] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class SyncResult:
    """Cloud acknowledgement of an upload."""
    accepted: bool
    message: Optional[str] = None
