from __future__ import annotations

import ipaddress
from typing import Optional, Tuple, Union

from sessionguard.config import DEFAULT_TRUSTED_PROXY_CIDRS
from sessionguard.logging import get_logger

logger = get_logger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_cidrs(raw: Optional[str]) -> Tuple[Network, ...]:
    """Parse a comma-separated CIDR list; each entry needs an explicit prefix length."""
    networks = []
    for entry in (raw or "").split(","):
        candidate = entry.strip()
        if not candidate:
            continue
        if "/" not in candidate:
            logger.warning("trusted_proxy_cidr_invalid", cidr=candidate)
            continue
        try:
            networks.append(ipaddress.ip_network(candidate, strict=False))
        except ValueError:
            logger.warning("trusted_proxy_cidr_invalid", cidr=candidate)
    return tuple(networks)


class ClientIpResolver:
    """Resolve the caller address, honouring X-Forwarded-For only from trusted proxies."""

    def __init__(self, trusted_cidrs: Optional[str] = DEFAULT_TRUSTED_PROXY_CIDRS) -> None:
        self.trusted_networks = parse_cidrs(trusted_cidrs)

    def is_trusted(self, peer: Optional[str]) -> bool:
        if not peer:
            return False
        try:
            address = ipaddress.ip_address(peer.strip())
        except ValueError:
            return False
        # Dual-stack listeners report IPv4 peers as ::ffff:a.b.c.d
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            address = address.ipv4_mapped
        # Mixed-family membership checks are simply False
        return any(address in network for network in self.trusted_networks)

    def resolve(self, peer: Optional[str], forwarded_for: Optional[str]) -> Optional[str]:
        if not self.is_trusted(peer):
            return peer
        if not forwarded_for or not forwarded_for.strip():
            return peer
        first = forwarded_for.split(",", 1)[0].strip()
        return first or peer
