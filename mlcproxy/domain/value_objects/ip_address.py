"""
IP Address Value Objects
Parsing and normalization of client addresses and allowed network ranges.
"""

import ipaddress
from dataclasses import dataclass
from typing import Optional, Union


IPAddressType = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetworkType = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def strip_port(address: str) -> str:
    """
    Remove a port suffix from an address.

    Handles bracketed IPv6 ("[2001:db8::1]:8080", "[::1]"), IPv4 or
    hostname with port ("10.0.0.1:1234") and bare addresses, which are
    returned unchanged (including unbracketed IPv6 such as "::1").

    Args:
        address: Address as seen on the wire or in a header

    Returns:
        The host part without port or brackets
    """
    address = address.strip()

    if address.startswith("["):
        end = address.find("]")
        if end == -1:
            return address.strip("[]")
        return address[1:end]

    # A single colon means host:port; more than one is a bare IPv6 literal
    if address.count(":") == 1:
        return address.split(":", 1)[0]

    return address


def parse_ip(address: str) -> Optional[IPAddressType]:
    """
    Parse an address (with or without port) into an IP object.

    IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) are normalized to their
    4-byte IPv4 form so they match IPv4 networks.

    Returns:
        The parsed address, or None if the host part is not an IP literal
    """
    host = strip_port(address)
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@dataclass(frozen=True)
class NetworkRange:
    """Value object representing an allowed CIDR network."""

    cidr: str
    network: IPNetworkType

    @classmethod
    def from_cidr(cls, cidr: str) -> "NetworkRange":
        """
        Create NetworkRange from CIDR notation.

        Host bits are tolerated ("10.0.0.5/8" covers 10.0.0.0/8).

        Raises:
            ValueError: If the text is not a valid CIDR block
        """
        cidr = cidr.strip()
        if "/" not in cidr:
            raise ValueError(f"Invalid CIDR network (missing prefix length): {cidr}")
        network = ipaddress.ip_network(cidr, strict=False)
        return cls(cidr=cidr, network=network)

    def contains(self, ip: Union[str, IPAddressType]) -> bool:
        """Check if IP address is in this range."""
        if isinstance(ip, str):
            ip = parse_ip(ip)
            if ip is None:
                return False
        # Membership across versions is simply False
        return ip in self.network

    def __str__(self) -> str:
        return self.cidr
