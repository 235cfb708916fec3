"""Address parsing helpers shared by the ledger, guard and enforcement layers."""
from __future__ import annotations

import ipaddress
import re
from pathlib import Path

_MAC_RE = re.compile(r"^[0-9A-F]{2}([:-]?)[0-9A-F]{2}(\1[0-9A-F]{2}){4}$")
_ARP_TABLE = Path("/proc/net/arp")
_INCOMPLETE_MAC = "00:00:00:00:00:00"


def normalize_mac(mac: str) -> str:
    """Return ``mac`` as upper-case, colon separated text.

    Raises:
        ValueError: If the value is not a 48-bit MAC address.
    """
    candidate = (mac or "").strip().upper()
    if not _MAC_RE.match(candidate):
        raise ValueError(f"Invalid MAC address: {mac!r}")
    digits = candidate.replace(":", "").replace("-", "")
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


def is_concrete_ip(ip: str | None) -> bool:
    """Return True for a real host address, False for empty or placeholder values."""
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return not addr.is_unspecified


def clean_ip(ip: str | None) -> str | None:
    """Strip IPv4-mapped prefixes and drop placeholder addresses."""
    if ip is None:
        return None
    value = ip.strip()
    if value.lower().startswith("::ffff:"):
        value = value[7:]
    return value if is_concrete_ip(value) else None


def network_class(ip: str) -> str:
    """Return the coarse network class of an address.

    IPv4 addresses are classed by their first octet, IPv6 by the first
    two hextets. Unparseable values are their own class.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    if addr.version == 4:
        return str(addr).split(".", 1)[0]
    return ":".join(addr.exploded.split(":")[:2])


def lookup_arp(ip: str, table: Path = _ARP_TABLE) -> str | None:
    """Resolve ``ip`` to a MAC address through the kernel neighbour table."""
    try:
        lines = table.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines[1:]:
        fields = line.split()
        if len(fields) >= 4 and fields[0] == ip and fields[3] != _INCOMPLETE_MAC:
            try:
                return normalize_mac(fields[3])
            except ValueError:
                return None
    return None
