"""
Network discovery engine.

Runs one discovery session through ordered stages:

    starting -> detecting_network -> reading_arp -> ping_sweep
             -> resolving_hostnames -> complete | failed

Progress events are published for every stage with a non-decreasing percent
and device count. The session checks its cancel token between stages and
inside the probe and lookup pools.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Awaitable, Callable, Optional

from .._types import Device, NetworkInfo, ScanProgress, ScanResult, ScanStage, now_utc
from ..cancellation import CancelToken
from ..classifier import enrich_device
from ..config import AgentConfig
from ..exceptions import CancellationRequested, NetworkUnavailable, PermissionDenied, ScanCancelled
from ..progress import ProgressBroadcaster
from .arp_discovery import ARPDiscovery
from .hostnames import HostnameResolver
from .network import detect_network
from .ping_sweep import PingSweepDiscovery, Probe, ReachabilityProbe

logger = logging.getLogger(__name__)

NetworkDetector = Callable[[], Awaitable[NetworkInfo]]

# Percent ranges per stage
PERCENT_DETECTING = 5
PERCENT_ARP_START, PERCENT_ARP_END = 10, 15
PERCENT_SWEEP_START, PERCENT_SWEEP_END = 20, 50
PERCENT_RESOLVE_START, PERCENT_RESOLVE_END = 55, 95


def merge_devices(*groups: list[Device]) -> list[Device]:
    """
    Merge device lists keyed by IP.

    Missing fields are filled from later entries. A positive probe latency
    replaces a passive (0) or unknown latency; the first positive latency
    seen is otherwise kept.
    """
    merged: dict[str, Device] = {}
    for group in groups:
        for device in group:
            existing = merged.get(device.ip)
            if existing is None:
                merged[device.ip] = device
                continue
            latency = existing.response_time_ms
            new_latency = device.response_time_ms
            if new_latency is not None and new_latency > 0 and not (latency is not None and latency > 0):
                latency = new_latency
            elif latency is None:
                latency = new_latency
            merged[device.ip] = existing.with_updates(
                mac=existing.mac or device.mac,
                hostname=existing.hostname or device.hostname,
                vendor=existing.vendor or device.vendor,
                response_time_ms=latency,
                last_seen_at=max(existing.last_seen_at, device.last_seen_at),
            )
    return list(merged.values())


class _ProgressEmitter:
    """Publishes ScanProgress with non-decreasing percent and device count."""

    def __init__(
        self,
        broadcaster: ProgressBroadcaster[ScanProgress],
        session_id: Optional[str],
        clock: Callable[[], float],
    ):
        self.broadcaster = broadcaster
        self.session_id = session_id
        self.clock = clock
        self.started = clock()
        self.percent = 0
        self.devices_found = 0

    def emit(
        self,
        stage: ScanStage,
        message: str,
        percent: Optional[int] = None,
        devices_found: Optional[int] = None,
        error: Optional[str] = None,
        exact_count: bool = False,
    ) -> ScanProgress:
        if percent is not None:
            self.percent = max(self.percent, min(percent, 100))
        if devices_found is not None:
            self.devices_found = devices_found if exact_count else max(self.devices_found, devices_found)
        event = ScanProgress(
            stage=stage,
            message=message,
            percent=self.percent,
            devices_found=self.devices_found,
            elapsed_secs=round(self.clock() - self.started, 3),
            session_id=self.session_id,
            error=error,
        )
        self.broadcaster.publish(event)
        return event


class DiscoveryEngine:
    """
    Finds devices on the local subnet.

    Collaborators are injectable so sessions can run against fake network
    sources in tests.
    """

    def __init__(
        self,
        config: AgentConfig,
        broadcaster: Optional[ProgressBroadcaster[ScanProgress]] = None,
        network_detector: Optional[NetworkDetector] = None,
        arp: Optional[ARPDiscovery] = None,
        probe: Optional[Probe] = None,
        resolver: Optional[HostnameResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.broadcaster = broadcaster or ProgressBroadcaster("scan")
        self.network_detector = network_detector or detect_network
        self.arp = arp or ARPDiscovery()
        self.probe = probe or ReachabilityProbe(config.probe_timeout, config.tcp_probe_ports)
        self.sweep = PingSweepDiscovery(self.probe, config.probe_workers, config.max_sweep_hosts)
        self.resolver = resolver or HostnameResolver(config.hostname_timeout, config.hostname_workers)
        self.clock = clock

    def close(self) -> None:
        self.resolver.close()

    async def run_scan(
        self,
        token: Optional[CancelToken] = None,
        session_id: Optional[str] = None,
    ) -> ScanResult:
        """
        Run one discovery session.

        Returns:
            ScanResult whose device count equals the final devices_found

        Raises:
            NetworkUnavailable: No interface/subnet could be determined
            ScanCancelled: The cancel token fired before completion
        """
        token = token or CancelToken()
        started_at = now_utc()
        progress = _ProgressEmitter(self.broadcaster, session_id, self.clock)
        progress.emit(ScanStage.STARTING, "Starting network scan...", 0, 0)
        logger.info(f"[Scan] Session {session_id or '-'} started")

        try:
            token.raise_if_cancelled(ScanCancelled)
            progress.emit(ScanStage.DETECTING_NETWORK, "Detecting network configuration...", PERCENT_DETECTING)
            network = await self.network_detector()

            token.raise_if_cancelled(ScanCancelled)
            progress.emit(ScanStage.READING_ARP, f"Reading ARP table on {network.interface}...", PERCENT_ARP_START)
            arp_devices = await self._read_arp(network, token)
            progress.emit(
                ScanStage.READING_ARP,
                f"Found {len(arp_devices)} devices in ARP table",
                PERCENT_ARP_END,
                len(arp_devices),
            )

            token.raise_if_cancelled(ScanCancelled)
            responders = await self._ping_sweep(network, arp_devices, token, progress)
            token.raise_if_cancelled(ScanCancelled)

            devices = merge_devices(arp_devices, responders)
            devices = self._include_local_host(devices, network)

            progress.emit(
                ScanStage.RESOLVING_HOSTNAMES,
                f"Resolving hostnames for {len(devices)} devices...",
                PERCENT_RESOLVE_START,
                len(devices),
            )
            devices = await self._resolve_hostnames(devices, token, progress)
            token.raise_if_cancelled(ScanCancelled)

            devices = [enrich_device(d) for d in devices]
            devices.sort(key=lambda d: ipaddress.IPv4Address(d.ip))

            progress.emit(
                ScanStage.COMPLETE,
                f"Scan complete: found {len(devices)} devices",
                100,
                len(devices),
                exact_count=True,
            )
            logger.info(f"[Scan] Complete: {len(devices)} devices on {network.subnet}")
            return ScanResult(
                devices=devices,
                network_info=network,
                started_at=started_at,
                completed_at=now_utc(),
                arp_count=len(arp_devices),
                probed_count=len(responders),
                session_id=session_id,
            )

        except (CancellationRequested, asyncio.CancelledError) as e:
            progress.emit(ScanStage.FAILED, "Scan cancelled", error="cancelled")
            logger.info("[Scan] Cancelled")
            if isinstance(e, asyncio.CancelledError):
                raise
            raise ScanCancelled(token.reason or "cancelled") from e

        except NetworkUnavailable as e:
            progress.emit(ScanStage.FAILED, f"Scan failed: {e}", error=str(e))
            logger.error(f"[Scan] Network unavailable: {e}")
            raise

        except Exception as e:
            progress.emit(ScanStage.FAILED, f"Scan failed: {e}", error=str(e))
            logger.error(f"[Scan] Failed: {e}")
            raise

    async def _read_arp(self, network: NetworkInfo, token: CancelToken) -> list[Device]:
        try:
            return await self.arp.discover(network, token)
        except PermissionDenied as e:
            logger.warning(f"[Scan] ARP table not readable, continuing with ping sweep only: {e}")
            return []
        except (asyncio.TimeoutError, OSError) as e:
            logger.warning(f"[Scan] ARP read failed, continuing with ping sweep only: {e!r}")
            return []

    async def _ping_sweep(
        self,
        network: NetworkInfo,
        known: list[Device],
        token: CancelToken,
        progress: _ProgressEmitter,
    ) -> list[Device]:
        base_count = len(known)
        known_ips = [d.ip for d in known]
        total = max(1, min(network.network.num_addresses, self.config.max_sweep_hosts))
        step = max(1, total // 30)
        state = {"done": 0, "found": 0}

        progress.emit(
            ScanStage.PING_SWEEP,
            f"Probing {network.subnet}...",
            PERCENT_SWEEP_START,
            base_count,
        )

        def on_result(ip: str, latency: Optional[float]) -> None:
            state["done"] += 1
            if latency is not None:
                state["found"] += 1
            if latency is not None or state["done"] % step == 0:
                span = PERCENT_SWEEP_END - PERCENT_SWEEP_START
                progress.emit(
                    ScanStage.PING_SWEEP,
                    f"Probed {state['done']} addresses, {state['found']} responded",
                    PERCENT_SWEEP_START + int(span * min(state["done"], total) / total),
                    base_count + state["found"],
                )

        responders = await self.sweep.discover(network, token, exclude=known_ips, on_result=on_result)
        progress.emit(
            ScanStage.PING_SWEEP,
            f"Ping sweep found {len(responders)} additional devices",
            PERCENT_SWEEP_END,
            base_count + len(responders),
        )
        return responders

    def _include_local_host(self, devices: list[Device], network: NetworkInfo) -> list[Device]:
        local_ip = network.local_ip
        if not local_ip or any(d.ip == local_ip for d in devices):
            return devices
        if ipaddress.IPv4Address(local_ip) not in network.network:
            return devices
        logger.debug(f"Adding local host {local_ip}")
        local = Device(ip=local_ip, hostname=socket.gethostname() or None, response_time_ms=0.0)
        return devices + [local]

    async def _resolve_hostnames(
        self,
        devices: list[Device],
        token: CancelToken,
        progress: _ProgressEmitter,
    ) -> list[Device]:
        pending = sum(1 for d in devices if not d.hostname)
        total = max(1, pending)
        state = {"done": 0}

        def on_result(ip: str, hostname: Optional[str]) -> None:
            state["done"] += 1
            span = PERCENT_RESOLVE_END - PERCENT_RESOLVE_START
            progress.emit(
                ScanStage.RESOLVING_HOSTNAMES,
                f"Resolved {state['done']}/{pending} hostnames",
                PERCENT_RESOLVE_START + int(span * state["done"] / total),
            )

        resolved = await self.resolver.resolve_all(devices, token, on_result)
        progress.emit(ScanStage.RESOLVING_HOSTNAMES, "Hostname resolution finished", PERCENT_RESOLVE_END)
        return resolved
