"""
Device identity classification from MAC address and vendor name.

The vendor is looked up from the MAC OUI (first three octets) and the device
type is inferred from an ordered rule table. The first matching rule wins, so
more specific categories (firewall appliances, virtualisation) come before
broad ones (computer).
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from ._types import Device, DeviceType

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[:\-.]")
_HEX = re.compile(r"^[0-9A-F]+$")


# Common OUI prefixes. A full deployment would ship the IEEE registry; this
# table covers the vendors seen most often on home and small-office LANs.
OUI_VENDORS: dict[str, str] = {
    # Apple
    "00:03:93": "Apple, Inc.",
    "00:0A:95": "Apple, Inc.",
    "00:17:F2": "Apple, Inc.",
    "28:CF:E9": "Apple, Inc.",
    "A4:83:E7": "Apple, Inc.",
    "AC:BC:32": "Apple, Inc.",
    "F0:18:98": "Apple, Inc.",
    # Network equipment
    "00:00:0C": "Cisco Systems, Inc",
    "00:01:42": "Cisco Systems, Inc",
    "00:1B:D4": "Cisco Systems, Inc",
    "04:F4:1C": "Routerboard.com",
    "4C:5E:0C": "Routerboard.com",
    "6C:3B:6B": "Routerboard.com",
    "E4:8D:8C": "Routerboard.com",
    "00:15:6D": "Ubiquiti Networks Inc.",
    "24:A4:3C": "Ubiquiti Networks Inc.",
    "78:8A:20": "Ubiquiti Networks Inc.",
    "F0:9F:C2": "Ubiquiti Networks Inc.",
    "14:CC:20": "TP-LINK TECHNOLOGIES CO.,LTD.",
    "50:C7:BF": "TP-LINK TECHNOLOGIES CO.,LTD.",
    "F4:F2:6D": "TP-LINK TECHNOLOGIES CO.,LTD.",
    "00:09:5B": "Netgear",
    "00:14:6C": "Netgear",
    "A0:40:A0": "Netgear",
    "00:05:85": "Juniper Networks",
    "28:8A:1C": "Juniper Networks",
    "00:0B:86": "Aruba Networks",
    "24:DE:C6": "Aruba Networks",
    # Security appliances
    "00:09:0F": "Fortinet, Inc.",
    "90:6C:AC": "Fortinet, Inc.",
    "00:1B:17": "Palo Alto Networks",
    "00:17:C5": "SonicWall",
    "C0:EA:E4": "SonicWall",
    "00:90:7F": "WatchGuard Technologies, Inc.",
    "00:1A:8C": "Sophos Ltd",
    # Servers and storage
    "00:25:90": "Super Micro Computer, Inc.",
    "AC:1F:6B": "Super Micro Computer, Inc.",
    "00:11:32": "Synology Incorporated",
    "00:08:9B": "QNAP Systems, Inc.",
    "24:5E:BE": "QNAP Systems, Inc.",
    # Computers and components
    "00:02:B3": "Intel Corporation",
    "00:1B:21": "Intel Corporate",
    "00:14:22": "Dell Inc.",
    "18:03:73": "Dell Inc.",
    "B8:AC:6F": "Dell Inc.",
    "F8:BC:12": "Dell Inc.",
    "00:E0:4C": "Realtek Semiconductor Corp.",
    "B8:27:EB": "Raspberry Pi Foundation",
    "DC:A6:32": "Raspberry Pi Trading Ltd",
    "E4:5F:01": "Raspberry Pi Trading Ltd",
    # Printers
    "00:1E:8F": "Canon Inc.",
    "00:26:AB": "Seiko Epson Corporation",
    "64:EB:8C": "Seiko Epson Corporation",
    "00:1B:A9": "Brother Industries, Ltd.",
    "30:05:5C": "Brother Industries, Ltd.",
    "00:00:AA": "Xerox Corporation",
    # Smart home / IoT
    "00:0E:58": "Sonos, Inc.",
    "5C:AA:FD": "Sonos, Inc.",
    "94:9F:3E": "Sonos, Inc.",
    "00:17:88": "Philips Lighting BV",
    "18:B4:30": "Nest Labs Inc.",
    "24:0A:C4": "Espressif Inc.",
    "30:AE:A4": "Espressif Inc.",
    "84:F3:EB": "Espressif Inc.",
    "3C:5A:B4": "Google, Inc.",
    "F4:F5:D8": "Google, Inc.",
    "44:65:0D": "Amazon Technologies Inc.",
    "FC:65:DE": "Amazon Technologies Inc.",
    "B0:A7:37": "Roku, Inc.",
    "DC:3A:5E": "Roku, Inc.",
    # Phones and consoles
    "00:12:FB": "Samsung Electronics Co.,Ltd",
    "00:16:32": "Samsung Electronics Co.,Ltd",
    "00:04:1F": "Sony Interactive Entertainment Inc.",
    "00:09:BF": "Nintendo Co., Ltd.",
    "00:17:AB": "Nintendo Co., Ltd.",
    "98:B6:E9": "Nintendo Co., Ltd.",
    "00:50:F2": "Microsoft Corporation",
    # Virtualisation
    "00:50:56": "VMware, Inc.",
    "00:0C:29": "VMware, Inc.",
    "00:05:69": "VMware, Inc.",
    "00:1C:42": "Parallels, Inc.",
    "08:00:27": "Oracle VirtualBox",
    "00:16:3E": "XenSource, Inc.",
    "00:15:5D": "Microsoft Hyper-V",
    "52:54:00": "QEMU virtual NIC",
    "02:42:AC": "Docker container",
    "BC:24:11": "Proxmox Server Solutions GmbH",
}

# OUIs that only ever appear on virtual NICs
VIRTUAL_MAC_PREFIXES = frozenset({
    "02:42:AC",  # Docker
    "00:50:56",  # VMware
    "00:0C:29",  # VMware
    "00:05:69",  # VMware
    "00:16:3E",  # Xen
    "00:15:5D",  # Hyper-V
    "00:1C:42",  # Parallels
    "52:54:00",  # QEMU/KVM
    "08:00:27",  # VirtualBox
    "BC:24:11",  # Proxmox
})


# Ordered (keywords, type) rules. Keywords match whole words of the
# lowercased vendor name.
VENDOR_RULES: list[tuple[tuple[str, ...], DeviceType]] = [
    (("firewalla", "pfsense", "opnsense", "sophos", "watchguard", "sonicwall",
      "barracuda", "checkpoint", "check point", "forcepoint", "untangle"),
     DeviceType.FIREWALL),
    (("proxmox", "vmware", "xensource", "parallels", "virtualbox", "qemu",
      "docker", "kubernetes", "hyper-v"),
     DeviceType.SERVICE),
    (("cisco", "juniper", "arista", "ubiquiti", "netgear", "tp-link",
      "linksys", "d-link", "mikrotik", "aruba", "ruckus", "fortinet",
      "palo alto", "zyxel", "draytek", "meraki", "cambium", "routerboard"),
     DeviceType.ROUTER),
    (("supermicro", "super micro", "dell emc", "hpe",
      "hewlett packard enterprise", "ibm", "oracle", "fujitsu", "inspur"),
     DeviceType.SERVER),
    (("apple",),
     DeviceType.APPLE),
    (("synology", "qnap", "western digital", "buffalo", "drobo", "readynas",
      "ugreen", "asustor", "terramaster"),
     DeviceType.NAS),
    (("sonos", "philips", "signify", "ring", "nest", "ecobee", "wyze",
      "tuya", "shelly", "espressif", "amazon", "google", "roku", "wemo",
      "lifx", "nanoleaf"),
     DeviceType.IOT),
    (("hewlett packard", "hp inc", "canon", "epson", "brother", "xerox",
      "lexmark", "ricoh", "konica", "kyocera"),
     DeviceType.PRINTER),
    (("sony", "nintendo", "microsoft", "valve"),
     DeviceType.GAMING),
    (("samsung", "huawei", "xiaomi", "oneplus", "oppo", "vivo", "motorola",
      "lg electronics", "realme", "honor"),
     DeviceType.MOBILE),
    (("dell", "lenovo", "acer", "asus", "asustek", "intel", "realtek",
      "gigabyte", "msi", "hp", "toshiba"),
     DeviceType.COMPUTER),
]


def _compile_rules() -> list[tuple[re.Pattern[str], DeviceType]]:
    compiled = []
    for keywords, device_type in VENDOR_RULES:
        alternatives = "|".join(re.escape(k) for k in keywords)
        compiled.append((re.compile(rf"(?<![a-z0-9])(?:{alternatives})(?![a-z0-9])"), device_type))
    return compiled


_COMPILED_RULES = _compile_rules()


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """
    Normalize a MAC address to upper-case colon form (AA:BB:CC:DD:EE:FF).

    Accepts colon, dash, dot or no separators. Partial addresses of at least
    three octets are right-padded with zeros so OUI lookups still work.

    Returns:
        Normalized MAC, or None if the input is not a MAC address
    """
    if not mac:
        return None
    parts = [p for p in _SEPARATORS.split(mac.strip()) if p]
    if len(parts) == 6 and all(len(p) <= 2 for p in parts):
        # macOS prints octets without leading zeros (1:0:5e:0:0:fb)
        cleaned = "".join(p.zfill(2) for p in parts).upper()
    else:
        cleaned = "".join(parts).upper()
    if len(cleaned) < 6 or not _HEX.match(cleaned):
        return None
    padded = cleaned.ljust(12, "0")[:12]
    return ":".join(padded[i:i + 2] for i in range(0, 12, 2))


def lookup_vendor(mac: Optional[str]) -> Optional[str]:
    """Look up the hardware vendor for a MAC address from its OUI."""
    normalized = normalize_mac(mac)
    if normalized is None:
        return None
    vendor = OUI_VENDORS.get(normalized[:8])
    if vendor:
        logger.debug(f"OUI lookup for {mac}: {vendor}")
    return vendor


def classify_vendor(vendor: Optional[str]) -> DeviceType:
    """
    Infer a device type from a vendor name.

    Pure and deterministic: the same vendor always maps to the same type.
    Unknown or empty vendors map to DeviceType.UNKNOWN.
    """
    if not vendor:
        return DeviceType.UNKNOWN
    vendor_lower = vendor.lower()
    for pattern, device_type in _COMPILED_RULES:
        if pattern.search(vendor_lower):
            return device_type
    return DeviceType.UNKNOWN


def classify_mac(mac: Optional[str]) -> Optional[DeviceType]:
    """Return SERVICE for virtual NIC prefixes, None otherwise."""
    normalized = normalize_mac(mac)
    if normalized and normalized[:8] in VIRTUAL_MAC_PREFIXES:
        return DeviceType.SERVICE
    return None


def identify(mac: Optional[str]) -> tuple[Optional[str], DeviceType]:
    """Resolve (vendor, device_type) for a MAC address."""
    vendor = lookup_vendor(mac)
    device_type = classify_mac(mac) or classify_vendor(vendor)
    return vendor, device_type


def enrich_device(device: Device) -> Device:
    """
    Return a copy of the device with vendor and type attached.

    A vendor already present on the device (e.g. from a previous scan) is
    kept when the OUI table has no entry.
    """
    vendor, device_type = identify(device.mac)
    vendor = vendor or device.vendor
    if device_type == DeviceType.UNKNOWN:
        device_type = classify_vendor(vendor)
    return device.with_updates(
        mac=normalize_mac(device.mac) or device.mac,
        vendor=vendor,
        device_type=device_type,
    )
