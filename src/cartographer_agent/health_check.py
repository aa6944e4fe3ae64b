"""
Health checks for known devices.

Re-probes every device from the last scan, classifies it as healthy,
degraded or offline, and uploads the results. The upload outcome never
affects the classification: an unreachable cloud only clears
synced_to_cloud.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ._types import (
    Device,
    DeviceHealthResult,
    HealthCheckProgress,
    HealthCheckResult,
    HealthCheckStage,
    HealthStatus,
    SyncResult,
    now_utc,
)
from .cancellation import CancelToken
from .config import AgentConfig
from .discovery.arp_discovery import ARPDiscovery
from .discovery.ping_sweep import Probe, ReachabilityProbe
from .discovery.pool import WorkerPool
from .exceptions import AgentError, CancellationRequested, PermissionDenied
from .progress import ProgressBroadcaster

logger = logging.getLogger(__name__)

HealthUploader = Callable[[HealthCheckResult], Awaitable[SyncResult]]


def classify_health(
    device: Device,
    latency: Optional[float],
    arp_ips: set[str],
    degraded_threshold_ms: float = 100.0,
) -> DeviceHealthResult:
    """
    Classify one device from its probe result.

    A device that did not answer is still healthy when it was previously
    known only from a passive record and is still in the ARP table.
    """
    if latency is not None:
        status = HealthStatus.HEALTHY if latency <= degraded_threshold_ms else HealthStatus.DEGRADED
        return DeviceHealthResult(ip=device.ip, status=status, response_time_ms=latency)
    if device.is_passive and device.ip in arp_ips:
        return DeviceHealthResult(ip=device.ip, status=HealthStatus.HEALTHY, response_time_ms=0.0)
    return DeviceHealthResult(ip=device.ip, status=HealthStatus.OFFLINE, response_time_ms=None)


def apply_health(devices: list[Device], result: HealthCheckResult) -> list[Device]:
    """Return devices with health status and latency from a check applied."""
    by_ip = {r.ip: r for r in result.results}
    updated = []
    for device in devices:
        verdict = by_ip.get(device.ip)
        if verdict is None:
            updated.append(device)
            continue
        changes = {"health": verdict.status}
        if verdict.reachable:
            changes["response_time_ms"] = verdict.response_time_ms
            changes["last_seen_at"] = result.completed_at
        updated.append(device.with_updates(**changes))
    return updated


def _unique_by_ip(devices: list[Device]) -> list[Device]:
    """Drop repeated IPs; the first record wins."""
    seen: dict[str, Device] = {}
    for device in devices:
        seen.setdefault(device.ip, device)
    return list(seen.values())


class HealthCheckEngine:
    """Runs health-check sessions over a known device list."""

    def __init__(
        self,
        config: AgentConfig,
        broadcaster: Optional[ProgressBroadcaster[HealthCheckProgress]] = None,
        probe: Optional[Probe] = None,
        arp: Optional[ARPDiscovery] = None,
        uploader: Optional[HealthUploader] = None,
    ):
        self.config = config
        self.broadcaster = broadcaster or ProgressBroadcaster("health")
        self.probe = probe or ReachabilityProbe(config.probe_timeout, config.tcp_probe_ports)
        self.arp = arp or ARPDiscovery()
        self.uploader = uploader
        self.pool: WorkerPool[float] = WorkerPool(config.probe_workers, name="health")

    def _emit(self, stage: HealthCheckStage, message: str, total: int, checked: int,
              healthy: int, session_id: Optional[str], synced: Optional[bool] = None) -> None:
        self.broadcaster.publish(HealthCheckProgress(
            stage=stage,
            message=message,
            total_devices=total,
            checked_devices=checked,
            healthy_devices=healthy,
            synced_to_cloud=synced,
            session_id=session_id,
        ))

    async def _arp_ips(self) -> set[str]:
        try:
            return await self.arp.read_ips()
        except PermissionDenied as e:
            logger.warning(f"[Health] ARP table not readable: {e}")
            return set()
        except (asyncio.TimeoutError, OSError) as e:
            logger.warning(f"[Health] ARP read failed: {e!r}")
            return set()

    async def run_health_check(
        self,
        devices: list[Device],
        token: Optional[CancelToken] = None,
        session_id: Optional[str] = None,
    ) -> HealthCheckResult:
        """
        Probe every device and classify it.

        Raises:
            CancellationRequested: If the token fires while probing
        """
        token = token or CancelToken()
        started_at = now_utc()
        devices = _unique_by_ip(devices)
        total = len(devices)
        self._emit(HealthCheckStage.STARTING, f"Checking {total} devices...", total, 0, 0, session_id)

        if not devices:
            self._emit(HealthCheckStage.COMPLETE, "No devices to check", 0, 0, 0, session_id, synced=False)
            return HealthCheckResult(results=[], synced_to_cloud=False,
                                     started_at=started_at, session_id=session_id)

        counts = {"checked": 0, "reachable": 0}

        def on_result(ip: str, latency: Optional[float]) -> None:
            counts["checked"] += 1
            if latency is not None:
                counts["reachable"] += 1
            self._emit(
                HealthCheckStage.CHECKING_DEVICES,
                f"Checking {ip}...",
                total, counts["checked"], counts["reachable"], session_id,
            )

        try:
            latencies = await self.pool.run([d.ip for d in devices], self.probe, token, on_result)
            token.raise_if_cancelled()
        except (CancellationRequested, asyncio.CancelledError):
            self._emit(HealthCheckStage.FAILED, "Health check cancelled",
                       total, counts["checked"], counts["reachable"], session_id)
            logger.info("[Health] Cancelled")
            raise

        unanswered_passive = [
            d for d in devices if latencies.get(d.ip) is None and d.is_passive
        ]
        arp_ips = await self._arp_ips() if unanswered_passive else set()

        results = [
            classify_health(d, latencies.get(d.ip), arp_ips, self.config.degraded_threshold_ms)
            for d in devices
        ]
        result = HealthCheckResult(results=results, started_at=started_at, session_id=session_id)

        self._emit(HealthCheckStage.UPLOADING, "Syncing results to cloud...",
                   total, total, result.healthy_devices, session_id)
        result.synced_to_cloud = await self._upload(result)
        result.completed_at = now_utc()

        self._emit(
            HealthCheckStage.COMPLETE,
            f"Health check complete: {result.healthy_devices} healthy, "
            f"{result.unreachable_devices} unreachable",
            total, total, result.healthy_devices, session_id,
            synced=result.synced_to_cloud,
        )
        logger.info(
            f"[Health] {result.healthy} healthy, {result.degraded} degraded, "
            f"{result.offline} offline (synced={result.synced_to_cloud})"
        )
        return result

    async def _upload(self, result: HealthCheckResult) -> bool:
        if self.uploader is None:
            return False
        try:
            sync = await self.uploader(result)
        except AgentError as e:
            logger.warning(f"[Health] Upload failed: {e}")
            return False
        return sync.accepted
