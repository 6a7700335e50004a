"""
Trusted-Location Resolver.

Builds the set of tenant-trusted network ranges from Conditional Access IP
named locations. A tenant with no named locations (or none marked trusted)
resolves to an empty set; that is a valid state, not an error.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from ..telemetry.models import NamedLocation

logger = logging.getLogger("m365_identity_risk.classifiers.trusted_locations")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class TrustedLocationSet:
    """Immutable set of trusted networks, each tagged with its location name."""
    ranges: tuple[tuple[IPNetwork, str], ...] = ()

    def __len__(self) -> int:
        return len(self.ranges)

    @property
    def is_empty(self) -> bool:
        return not self.ranges

    def trusted_location_name(self, ip: Optional[str]) -> Optional[str]:
        """Return the named location containing ``ip``, or None."""
        if not ip or not self.ranges:
            return None
        try:
            address = ipaddress.ip_address(str(ip).strip())
        except ValueError:
            return None
        for network, name in self.ranges:
            if address.version == network.version and address in network:
                return name
        return None

    def is_trusted(self, ip: Optional[str]) -> bool:
        return self.trusted_location_name(ip) is not None

    def to_dict(self) -> dict:
        return {
            "count": len(self.ranges),
            "ranges": [{"cidr": str(n), "location": name} for n, name in self.ranges],
        }


def resolve_trusted_locations(
    named_locations: Optional[Iterable[NamedLocation]],
) -> TrustedLocationSet:
    """Resolve trusted IP ranges; absent configuration yields an empty set."""
    ranges: list[tuple[IPNetwork, str]] = []
    for location in named_locations or ():
        if location.kind != "ip" or not location.is_trusted:
            continue
        for cidr in location.ip_ranges:
            try:
                ranges.append((ipaddress.ip_network(cidr, strict=False), location.display_name))
            except ValueError:
                logger.warning(
                    f"Skipping malformed range {cidr!r} in named location "
                    f"'{location.display_name}'"
                )

    if not ranges:
        logger.info("No trusted named locations configured — trusted set is empty")
    ranges.sort(key=lambda r: (r[0].version, str(r[0]), r[1]))
    return TrustedLocationSet(ranges=tuple(ranges))
