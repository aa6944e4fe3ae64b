"""
Discovery methods for network scanning.

Each discovery method implements the same interface:
- async discover(network, token) -> list[Device]

Methods:
- ARP Discovery: Read the ARP cache for recently-seen hosts
- Ping Sweep: Probe every host address of the subnet
"""

from .base import DiscoveryMethod, run_command
from .arp_discovery import ARPDiscovery, ARPEntry
from .engine import DiscoveryEngine, merge_devices
from .hostnames import HostnameResolver
from .network import detect_network
from .ping_sweep import PingSweepDiscovery, ReachabilityProbe, parse_ping_time
from .pool import WorkerPool

__all__ = [
    "DiscoveryMethod",
    "run_command",
    "ARPDiscovery",
    "ARPEntry",
    "DiscoveryEngine",
    "merge_devices",
    "HostnameResolver",
    "detect_network",
    "PingSweepDiscovery",
    "ReachabilityProbe",
    "parse_ping_time",
    "WorkerPool",
]
