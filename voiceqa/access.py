"""
Client address resolution and allow-list check for the diagnostic endpoint.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional, Union

from fastapi import Request


def resolve_client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else ""


IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_address(value: str) -> Optional[IpAddress]:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    # ::ffff:1.2.3.4 as reported by dual-stack sockets
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return address.ipv4_mapped
    return address


def is_allowed(client_ip: str, allowed: Iterable[str]) -> bool:
    address = _parse_address(client_ip)
    for entry in allowed:
        if entry == client_ip:
            return True
        if address is None:
            continue
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError:
            continue
        if address.version == network.version and address in network:
            return True
    return False
