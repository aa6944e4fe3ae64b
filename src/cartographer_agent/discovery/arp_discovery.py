"""
ARP table discovery.

Reads the local ARP cache to find recently-seen hosts on the network.
Fast and passive, but limited to hosts that have communicated recently.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .._types import Device, NetworkInfo
from ..cancellation import CancelToken
from ..classifier import normalize_mac
from ..exceptions import PermissionDenied
from .base import CommandRunner, DiscoveryMethod, run_command

logger = logging.getLogger(__name__)

PROC_NET_ARP = Path("/proc/net/arp")

# Linux/macOS `arp -an`: ? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0
_BSD_STYLE = re.compile(r"(?:(\S+)\s+)?\((\d+\.\d+\.\d+\.\d+)\)\s+at\s+([0-9a-fA-F:]+|\(incomplete\))")
# Windows `arp -a`:   192.168.1.1          aa-bb-cc-dd-ee-ff     dynamic
_WINDOWS_STYLE = re.compile(r"^\s*(\d+\.\d+\.\d+\.\d+)\s+([0-9a-fA-F]{2}(?:-[0-9a-fA-F]{2}){5})\s+\w+")

_INVALID_MACS = {"00:00:00:00:00:00", "FF:FF:FF:FF:FF:FF"}
_MULTICAST = ipaddress.IPv4Network("224.0.0.0/4")


@dataclass(frozen=True)
class ARPEntry:
    """One resolved neighbour from the ARP cache."""
    ip: str
    mac: str
    hostname: Optional[str] = None


def _entry(ip: str, mac: str, hostname: Optional[str] = None) -> Optional[ARPEntry]:
    normalized = normalize_mac(mac)
    if normalized is None or normalized in _INVALID_MACS:
        return None
    try:
        if ipaddress.IPv4Address(ip) in _MULTICAST:
            return None
    except ValueError:
        return None
    return ARPEntry(ip=ip, mac=normalized, hostname=hostname)


def parse_proc_arp(text: str) -> list[ARPEntry]:
    """
    Parse /proc/net/arp.

    Entries with flags 0x0 are incomplete (no reply yet) and are skipped.
    """
    entries = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4:
            continue
        ip, flags, mac = parts[0], parts[2], parts[3]
        if flags == "0x0":
            continue
        entry = _entry(ip, mac)
        if entry:
            entries.append(entry)
    return entries


def parse_arp_output(text: str) -> list[ARPEntry]:
    """Parse `arp -an` (Linux/macOS) or `arp -a` (Windows) output."""
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        match = _BSD_STYLE.search(line)
        if match:
            if match.group(3) == "(incomplete)":
                continue
            hostname = match.group(1) if match.group(1) not in (None, "?") else None
            entry = _entry(match.group(2), match.group(3), hostname)
        else:
            match = _WINDOWS_STYLE.match(line)
            if not match:
                continue
            entry = _entry(match.group(1), match.group(2))
        if entry:
            entries.append(entry)
    return entries


def _looks_like_permission_error(stderr: str) -> bool:
    lowered = stderr.lower()
    return "permission" in lowered or "not permitted" in lowered or "denied" in lowered


class ARPDiscovery(DiscoveryMethod):
    """
    Discover devices from the ARP cache.

    On Linux the kernel table in /proc/net/arp is read directly; elsewhere
    the `arp` command is used.
    """

    def __init__(
        self,
        proc_path: Optional[Path] = PROC_NET_ARP,
        runner: CommandRunner = run_command,
    ):
        """
        Initialize ARP discovery.

        Args:
            proc_path: Kernel ARP table (None to always use the arp command)
            runner: Command runner, replaceable for tests
        """
        self.proc_path = proc_path
        self.runner = runner

    @property
    def name(self) -> str:
        return "arp"

    async def is_available(self) -> bool:
        if self.proc_path is not None and self.proc_path.exists():
            return True
        try:
            await self.runner("arp", "-a")
            return True
        except (FileNotFoundError, OSError):
            return False

    async def read_table(self) -> list[ARPEntry]:
        """
        Read every complete entry in the ARP cache.

        Raises:
            PermissionDenied: If the OS refuses access to the table
        """
        if self.proc_path is not None and self.proc_path.exists():
            try:
                return parse_proc_arp(self.proc_path.read_text())
            except PermissionError as e:
                raise PermissionDenied(f"Cannot read {self.proc_path}: {e}") from e
            except OSError as e:
                logger.error(f"Failed to read {self.proc_path}: {e}")
                return []

        cmd = ("arp", "-a") if sys.platform == "win32" else ("arp", "-an")
        try:
            returncode, stdout, stderr = await self.runner(*cmd)
        except PermissionError as e:
            raise PermissionDenied(f"Cannot run arp: {e}") from e
        except FileNotFoundError:
            logger.warning("arp command not found; skipping ARP discovery")
            return []
        except asyncio.TimeoutError:
            logger.warning("arp command timed out; skipping ARP discovery")
            return []
        except OSError as e:
            logger.error(f"Failed to run arp: {e}")
            return []

        if returncode != 0:
            if _looks_like_permission_error(stderr):
                raise PermissionDenied(f"arp refused: {stderr.strip()}")
            logger.error(f"ARP command failed: {stderr.strip()}")
            return []
        return parse_arp_output(stdout)

    async def discover(
        self,
        network: NetworkInfo,
        token: Optional[CancelToken] = None,
    ) -> list[Device]:
        """
        Return ARP neighbours inside the scanned subnet.

        Devices carry response_time_ms=0.0 to mark them as passive records.
        The first entry for an IP wins.
        """
        subnet = network.network
        seen: dict[str, Device] = {}
        for entry in await self.read_table():
            address = ipaddress.IPv4Address(entry.ip)
            if address not in subnet:
                continue
            if subnet.prefixlen < 31 and address in (subnet.network_address, subnet.broadcast_address):
                continue
            if entry.ip in seen:
                continue
            seen[entry.ip] = Device(
                ip=entry.ip,
                mac=entry.mac,
                hostname=entry.hostname,
                response_time_ms=0.0,
            )

        logger.info(f"ARP discovery found {len(seen)} hosts in {network.subnet}")
        return list(seen.values())

    async def read_ips(self, network: Optional[NetworkInfo] = None) -> set[str]:
        """IPs currently present in the ARP cache (optionally within a subnet)."""
        entries = await self.read_table()
        if network is None:
            return {e.ip for e in entries}
        subnet = network.network
        return {e.ip for e in entries if ipaddress.IPv4Address(e.ip) in subnet}
