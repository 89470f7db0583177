"""Sequential client address allocation.

Addresses are handed out from ``<a>.<b>.<c>.2`` upwards. The last octet runs
2..254; when it wraps, the third octet is bumped, and a third octet past 254
means the pool is exhausted. "Most recent" is always decided numerically:
comparing dotted quads as strings puts 10.0.0.9 after 10.0.0.10.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable

from pubwifi.services.vpn.errors import InvalidConfiguration, PoolExhausted

FIRST_HOST = 2
LAST_HOST = 254
LAST_BLOCK = 254


def first_address(subnet: str) -> str:
    try:
        net = ipaddress.IPv4Network(subnet, strict=False)
    except ValueError as e:
        raise InvalidConfiguration(f"invalid subnet {subnet!r}") from e
    a, b, c, _ = net.network_address.packed
    return f"{a}.{b}.{c}.{FIRST_HOST}"


def next_address(ip: str) -> str:
    a, b, c, d = ipaddress.IPv4Address(ip).packed
    d += 1
    if d > LAST_HOST:
        d = FIRST_HOST
        c += 1
        if c > LAST_BLOCK:
            raise PoolExhausted(detail=f"no address after {ip}")
    return f"{a}.{b}.{c}.{d}"


def latest_address(ips: Iterable[str]) -> str | None:
    parsed = [ipaddress.IPv4Address(ip) for ip in ips if ip]
    if not parsed:
        return None
    return str(max(parsed))


class IPAllocator:
    def __init__(self, subnet: str) -> None:
        self.subnet = subnet
        self._first = first_address(subnet)

    def allocate(self, in_use: Iterable[str]) -> str:
        """Next address after the numerically highest one in use, or the first one."""
        latest = latest_address(in_use)
        if latest is None:
            return self._first
        return next_address(latest)
