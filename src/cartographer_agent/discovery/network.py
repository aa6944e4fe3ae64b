"""
Primary network interface detection.

Finds the interface that carries the default route, its IPv4 address and
subnet, and the gateway. Uses `ip` on Linux (falling back to the first
non-loopback address reported by `ip addr`), `route`/`ifconfig` on macOS
and `ipconfig` on Windows.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import sys
from typing import Optional

from .._types import NetworkInfo
from ..exceptions import NetworkUnavailable
from .base import CommandRunner, run_command

logger = logging.getLogger(__name__)

_INET_CIDR = re.compile(r"inet\s+(\d+\.\d+\.\d+\.\d+)/(\d+)")
_IFCONFIG_INET = re.compile(r"inet\s+(\d+\.\d+\.\d+\.\d+)\s+netmask\s+(0x[0-9a-fA-F]+|\d+\.\d+\.\d+\.\d+)")
_IPV4 = re.compile(r"\d+\.\d+\.\d+\.\d+")
_ADAPTER_HEADER = re.compile(r"^\S.*adapter\s+(.+):\s*$")

# Adapters that never carry the LAN we want to scan
_VIRTUAL_ADAPTERS = ("vethernet", "wsl", "hyper-v", "virtualbox", "vmware", "docker", "loopback", "tailscale")


def parse_default_route(output: str) -> tuple[Optional[str], Optional[str]]:
    """
    Parse `ip route show default`.

    Example: "default via 192.168.1.1 dev eth0 proto dhcp metric 100"

    Returns:
        (gateway_ip, interface); either may be None
    """
    for line in output.splitlines():
        tokens = line.split()
        if not tokens or tokens[0] != "default":
            continue
        gateway = interface = None
        for i, token in enumerate(tokens[:-1]):
            if token == "via":
                gateway = tokens[i + 1]
            elif token == "dev":
                interface = tokens[i + 1]
        if interface:
            return gateway, interface
    return None, None


def parse_ip_addr(output: str, skip_loopback: bool = True) -> Optional[tuple[str, str, str]]:
    """
    Parse `ip -4 -o addr show` output.

    Example: "2: eth0    inet 192.168.1.50/24 brd 192.168.1.255 scope global eth0"

    Returns:
        (interface, local_ip, subnet_cidr) of the first usable address
    """
    for line in output.splitlines():
        match = _INET_CIDR.search(line)
        if not match:
            continue
        ip, prefix = match.group(1), match.group(2)
        if skip_loopback and ip.startswith("127."):
            continue
        parts = line.split()
        interface = parts[1].rstrip(":") if len(parts) > 1 and parts[0].endswith(":") else ""
        network = ipaddress.IPv4Network(f"{ip}/{prefix}", strict=False)
        return interface, ip, str(network)
    return None


def parse_route_get(output: str) -> tuple[Optional[str], Optional[str]]:
    """Parse macOS `route -n get default` into (gateway_ip, interface)."""
    gateway = interface = None
    for line in output.splitlines():
        key, _, value = line.strip().partition(":")
        if key == "gateway":
            gateway = value.strip()
        elif key == "interface":
            interface = value.strip()
    return gateway, interface


def parse_ifconfig(output: str) -> Optional[tuple[str, str]]:
    """
    Parse macOS `ifconfig <iface>` into (local_ip, subnet_cidr).

    Netmask may be hex (0xffffff00) or dotted.
    """
    for match in _IFCONFIG_INET.finditer(output):
        ip, mask = match.group(1), match.group(2)
        if ip.startswith("127."):
            continue
        if mask.startswith("0x"):
            mask = str(ipaddress.IPv4Address(int(mask, 16)))
        network = ipaddress.IPv4Network(f"{ip}/{mask}", strict=False)
        return ip, str(network)
    return None


def parse_ipconfig(output: str) -> Optional[NetworkInfo]:
    """
    Parse Windows `ipconfig` output.

    Virtual adapters (WSL, Hyper-V, Docker, VPN) and loopback or link-local
    addresses are skipped. An adapter with an IPv4 default gateway is
    preferred over one without.

    Example block:
        Wireless LAN adapter Wi-Fi:
           IPv4 Address. . . . . . . . . . . : 192.168.1.50(Preferred)
           Subnet Mask . . . . . . . . . . . : 255.255.255.0
           Default Gateway . . . . . . . . . : fe80::1%12
                                               192.168.1.1
    """
    adapters: list[dict] = []
    current: Optional[dict] = None
    in_gateway = False

    for line in output.splitlines():
        header = _ADAPTER_HEADER.match(line)
        if header:
            name = header.group(1).strip()
            current = {
                "name": name,
                "virtual": any(p in line.lower() for p in _VIRTUAL_ADAPTERS),
                "ip": None,
                "mask": None,
                "gateway": None,
            }
            adapters.append(current)
            in_gateway = False
            continue

        stripped = line.strip()
        if current is None or not stripped:
            continue

        label, sep, value = stripped.partition(" : ")
        if not sep:
            # Continuation line of a multi-valued gateway entry
            if in_gateway and current["gateway"] is None and _IPV4.fullmatch(stripped):
                current["gateway"] = stripped
            continue

        in_gateway = False
        label = label.rstrip(". ")
        value = value.strip()
        if label in ("IPv4 Address", "IP Address"):
            match = _IPV4.match(value)
            if match and current["ip"] is None:
                current["ip"] = match.group(0)
        elif label == "Subnet Mask":
            current["mask"] = value
        elif label == "Default Gateway":
            in_gateway = True
            if _IPV4.fullmatch(value):
                current["gateway"] = value

    candidates = []
    for adapter in adapters:
        ip, mask = adapter["ip"], adapter["mask"]
        if adapter["virtual"] or not ip or not mask:
            continue
        if ip.startswith("127.") or ip.startswith("169.254."):
            continue
        try:
            network = ipaddress.IPv4Network(f"{ip}/{mask}", strict=False)
        except ValueError:
            logger.debug(f"Ignoring adapter {adapter['name']}: bad mask {mask}")
            continue
        candidates.append(NetworkInfo(
            interface=adapter["name"],
            subnet=str(network),
            gateway_ip=adapter["gateway"],
            local_ip=ip,
        ))

    with_gateway = [c for c in candidates if c.gateway_ip]
    if with_gateway:
        return with_gateway[0]
    return candidates[0] if candidates else None


async def _detect_linux(runner: CommandRunner) -> Optional[NetworkInfo]:
    _, route_out, _ = await runner("ip", "route", "show", "default")
    gateway, interface = parse_default_route(route_out)
    if interface:
        _, addr_out, _ = await runner("ip", "-4", "-o", "addr", "show", "dev", interface)
        parsed = parse_ip_addr(addr_out)
        if parsed:
            _, local_ip, subnet = parsed
            return NetworkInfo(interface=interface, subnet=subnet, gateway_ip=gateway, local_ip=local_ip)

    # No default route: take the first non-loopback address
    _, addr_out, _ = await runner("ip", "-4", "-o", "addr", "show")
    parsed = parse_ip_addr(addr_out)
    if parsed:
        iface, local_ip, subnet = parsed
        return NetworkInfo(interface=iface or "unknown", subnet=subnet, gateway_ip=gateway, local_ip=local_ip)
    return None


async def _detect_macos(runner: CommandRunner) -> Optional[NetworkInfo]:
    _, route_out, _ = await runner("route", "-n", "get", "default")
    gateway, interface = parse_route_get(route_out)
    if not interface:
        return None
    _, ifconfig_out, _ = await runner("ifconfig", interface)
    parsed = parse_ifconfig(ifconfig_out)
    if not parsed:
        return None
    local_ip, subnet = parsed
    return NetworkInfo(interface=interface, subnet=subnet, gateway_ip=gateway, local_ip=local_ip)


async def _detect_windows(runner: CommandRunner) -> Optional[NetworkInfo]:
    _, out, _ = await runner("ipconfig")
    return parse_ipconfig(out)


async def detect_network(
    runner: CommandRunner = run_command,
    platform: Optional[str] = None,
) -> NetworkInfo:
    """
    Determine the primary IPv4 interface and subnet.

    Raises:
        NetworkUnavailable: If no usable interface/subnet is found
    """
    platform = platform or sys.platform
    try:
        if platform == "darwin":
            info = await _detect_macos(runner)
        elif platform == "win32":
            info = await _detect_windows(runner)
        else:
            info = await _detect_linux(runner)
    except FileNotFoundError as e:
        raise NetworkUnavailable(f"Network tools not available: {e}") from e
    except OSError as e:
        raise NetworkUnavailable(f"Failed to query network configuration: {e}") from e

    if info is None:
        raise NetworkUnavailable("No active IPv4 interface found")

    logger.info(
        f"Detected network {info.subnet} on {info.interface} "
        f"(local {info.local_ip}, gateway {info.gateway_ip})"
    )
    return info
