"""
Active reachability probing.

A probe sends one ICMP echo through the system `ping` binary and, in
parallel, attempts TCP connects to a few common ports. The first answer wins;
a refused TCP connection still proves the host is up. Everything is bounded by
a single per-probe timeout, after which child processes are killed and
sockets closed.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import math
import re
import sys
from typing import Awaitable, Callable, Iterable, Optional

from .._types import Device, NetworkInfo
from ..cancellation import CancelToken
from .base import DiscoveryMethod, _kill
from .pool import WorkerPool

logger = logging.getLogger(__name__)

_PING_TIME = re.compile(r"time\s*([=<])\s*([\d.]+)\s*ms", re.IGNORECASE)

# Smallest latency reported for a successful probe; 0.0 is reserved for
# passive records.
MIN_LATENCY_MS = 0.01

Probe = Callable[[str], Awaitable[Optional[float]]]


def parse_ping_time(output: str) -> Optional[float]:
    """
    Extract round-trip time in milliseconds from ping output.

    Handles "time=12.3 ms" (Linux/macOS) and "time<1ms" (Windows).
    """
    match = _PING_TIME.search(output)
    if not match:
        return None
    try:
        value = float(match.group(2))
    except ValueError:
        return None
    return max(value, MIN_LATENCY_MS)


def ping_command(ip: str, timeout: float, platform: Optional[str] = None) -> list[str]:
    """Build a single-echo ping command for the current platform."""
    platform = platform or sys.platform
    if platform == "win32":
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), ip]
    if platform == "darwin":
        return ["ping", "-c", "1", "-W", str(int(timeout * 1000)), ip]
    return ["ping", "-c", "1", "-W", str(max(1, math.ceil(timeout))), ip]


async def first_answer(
    attempts: Iterable[Awaitable[Optional[float]]],
    timeout: float,
) -> Optional[float]:
    """
    Race attempts and return the first non-None result.

    Returns None if every attempt fails or the timeout expires. Attempts that
    are still running are cancelled before returning.
    """
    tasks = [asyncio.ensure_future(a) for a in attempts]
    if not tasks:
        return None
    try:
        for next_done in asyncio.as_completed(tasks, timeout=timeout):
            try:
                result = await next_done
            except asyncio.TimeoutError:
                return None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Probe attempt failed: {e}")
                continue
            if result is not None:
                return result
        return None
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class ReachabilityProbe:
    """ICMP plus TCP-connect reachability probe with a hard timeout."""

    def __init__(self, timeout: float = 1.0, tcp_ports: Optional[list[int]] = None):
        self.timeout = timeout
        self.tcp_ports = tcp_ports if tcp_ports is not None else [80, 443, 22, 445]

    async def __call__(self, ip: str) -> Optional[float]:
        return await self.probe(ip)

    async def probe(self, ip: str) -> Optional[float]:
        """
        Probe one address.

        Returns:
            Latency in milliseconds, or None if nothing answered in time
        """
        attempts = [self._icmp(ip)] + [self._tcp(ip, port) for port in self.tcp_ports]
        return await first_answer(attempts, self.timeout)

    async def _icmp(self, ip: str) -> Optional[float]:
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            proc = await asyncio.create_subprocess_exec(
                *ping_command(ip, self.timeout),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"ping unavailable: {e}")
            return None

        try:
            stdout, _ = await proc.communicate()
        finally:
            _kill(proc)

        if proc.returncode != 0:
            return None
        measured = (loop.time() - start) * 1000
        return parse_ping_time(stdout.decode(errors="replace")) or max(measured, MIN_LATENCY_MS)

    async def _tcp(self, ip: str, port: int) -> Optional[float]:
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            _, writer = await asyncio.open_connection(ip, port)
        except ConnectionRefusedError:
            # RST from the host: it is up, the port is just closed
            return max((loop.time() - start) * 1000, MIN_LATENCY_MS)
        except OSError:
            return None

        latency = max((loop.time() - start) * 1000, MIN_LATENCY_MS)
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return latency


def sweep_targets(
    network: NetworkInfo,
    exclude: Iterable[str] = (),
    limit: Optional[int] = None,
) -> list[str]:
    """
    Host addresses of the subnet, minus already-known ones.

    The network and broadcast addresses are never included.
    """
    excluded = set(exclude)
    targets = []
    for address in network.network.hosts():
        ip = str(address)
        if ip in excluded:
            continue
        if limit is not None and len(targets) >= limit:
            logger.warning(f"Sweep of {network.subnet} truncated to {limit} addresses")
            break
        targets.append(ip)
    return targets


class PingSweepDiscovery(DiscoveryMethod):
    """Probe every host address of the subnet through a bounded pool."""

    def __init__(
        self,
        probe: Probe,
        workers: int = 32,
        max_hosts: Optional[int] = None,
    ):
        self.probe = probe
        self.pool: WorkerPool[float] = WorkerPool(workers, name="ping")
        self.max_hosts = max_hosts

    @property
    def name(self) -> str:
        return "ping"

    async def discover(
        self,
        network: NetworkInfo,
        token: Optional[CancelToken] = None,
        exclude: Iterable[str] = (),
        on_result: Optional[Callable[[str, Optional[float]], None]] = None,
    ) -> list[Device]:
        """
        Return devices that answered a probe.

        Addresses in `exclude` (e.g. already seen in ARP) are not probed.
        """
        targets = sweep_targets(network, exclude, self.max_hosts)
        results = await self.pool.run(targets, self.probe, token, on_result)
        devices = [
            Device(ip=ip, response_time_ms=latency)
            for ip, latency in results.items()
            if latency is not None
        ]
        devices.sort(key=lambda d: ipaddress.IPv4Address(d.ip))
        logger.info(f"Ping sweep: {len(devices)}/{len(targets)} addresses responded")
        return devices
