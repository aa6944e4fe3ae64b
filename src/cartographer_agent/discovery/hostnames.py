"""
Hostname resolution for discovered devices.

Reverse DNS runs in a dedicated thread pool because socket.gethostbyaddr
blocks. When DNS has no answer, mDNS is tried through `avahi-resolve` where
available. Every lookup has a short timeout and failures only affect the
device being resolved.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .._types import Device
from ..cancellation import CancelToken
from ..exceptions import HostnameResolutionFailed
from .base import CommandRunner, run_command
from .pool import WorkerPool

logger = logging.getLogger(__name__)


def _clean(name: Optional[str], ip: str) -> Optional[str]:
    if not name:
        return None
    name = name.strip().rstrip(".")
    if not name or name == ip:
        return None
    return name


class HostnameResolver:
    """Resolves device hostnames with bounded concurrency."""

    def __init__(
        self,
        timeout: float = 1.5,
        workers: int = 32,
        runner: CommandRunner = run_command,
        use_mdns: bool = True,
    ):
        self.timeout = timeout
        self.runner = runner
        self.use_mdns = use_mdns
        self.pool: WorkerPool[str] = WorkerPool(workers, name="dns")
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rdns")

    async def reverse_dns(self, ip: str) -> str:
        """
        Reverse DNS lookup for one address.

        Raises:
            HostnameResolutionFailed: On timeout or lookup error
        """
        loop = asyncio.get_running_loop()
        try:
            name, _, _ = await asyncio.wait_for(
                loop.run_in_executor(self._executor, socket.gethostbyaddr, ip),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise HostnameResolutionFailed(f"{ip}: reverse lookup timed out") from e
        except OSError as e:
            raise HostnameResolutionFailed(f"{ip}: {e}") from e
        cleaned = _clean(name, ip)
        if cleaned is None:
            raise HostnameResolutionFailed(f"{ip}: no PTR record")
        return cleaned

    async def mdns(self, ip: str) -> Optional[str]:
        """Resolve through avahi (output: "192.168.1.20\thost.local")."""
        try:
            returncode, stdout, _ = await self.runner("avahi-resolve", "-a", ip, timeout=self.timeout)
        except (FileNotFoundError, PermissionError):
            self.use_mdns = False
            return None
        except asyncio.TimeoutError:
            return None
        if returncode != 0:
            return None
        parts = stdout.strip().split()
        return _clean(parts[1], ip) if len(parts) >= 2 else None

    async def resolve(self, ip: str) -> Optional[str]:
        try:
            return await self.reverse_dns(ip)
        except HostnameResolutionFailed as e:
            logger.debug(f"Hostname resolution failed: {e}")
        if self.use_mdns:
            return await self.mdns(ip)
        return None

    async def resolve_all(
        self,
        devices: list[Device],
        token: Optional[CancelToken] = None,
        on_result: Optional[Callable[[str, Optional[str]], None]] = None,
    ) -> list[Device]:
        """
        Attach hostnames to devices that do not have one yet.

        Returns:
            New device list in the same order; unresolved devices unchanged
        """
        pending = [d.ip for d in devices if not d.hostname]
        names = await self.pool.run(pending, self.resolve, token, on_result)
        resolved = sum(1 for n in names.values() if n)
        logger.info(f"Resolved {resolved}/{len(pending)} hostnames")
        return [
            d.with_updates(hostname=names[d.ip]) if names.get(d.ip) else d
            for d in devices
        ]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
