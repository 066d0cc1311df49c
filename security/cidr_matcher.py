"""
CIDR and literal IP matching.
Used by the trusted-proxy check, the allow/block lists and the IP reputation rule.
"""
import ipaddress
import logging
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_ip(value: Optional[str]) -> Optional[IPAddress]:
    """Parse an IP address, returning None for anything malformed."""
    if not value or not isinstance(value, str):
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def is_valid_ip(value: Optional[str]) -> bool:
    """Check if value is a syntactically valid IPv4 or IPv6 address."""
    return parse_ip(value) is not None


def is_valid_rule(value: Optional[str]) -> bool:
    """Check if value is a valid literal address or CIDR block."""
    if not value or not isinstance(value, str):
        return False
    if "/" not in value:
        return is_valid_ip(value)
    try:
        ipaddress.ip_network(value.strip(), strict=False)
        return True
    except ValueError:
        return False


def normalize_rule(value: Optional[str]) -> Optional[str]:
    """Canonical text of a literal address or CIDR block, or None when malformed."""
    if not is_valid_rule(value):
        return None
    value = value.strip()
    if "/" not in value:
        return str(ipaddress.ip_address(value))
    return str(ipaddress.ip_network(value, strict=False))


def is_public_ip(value: Optional[str]) -> bool:
    """Valid address outside private, reserved and other special-purpose ranges."""
    ip = parse_ip(value)
    if ip is None:
        return False
    return not (
        ip.is_private
        or ip.is_reserved
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_multicast
    )


class CidrMatcher:
    """
    Decides whether an address falls inside a CIDR range or equals a literal address.

    Matching never raises: malformed rules are rejected when they are written, so a bad
    value reaching this point simply does not match. IPv6 prefixes are supported; an
    address only matches a range of the same family.
    """

    @staticmethod
    def matches(ip: str, range_or_literal: str) -> bool:
        if not ip or not range_or_literal:
            return False

        if "/" not in range_or_literal:
            return ip == range_or_literal

        subnet, _, prefix = range_or_literal.partition("/")
        address = parse_ip(ip)
        network_address = parse_ip(subnet)
        if address is None or network_address is None:
            return False
        if address.version != network_address.version:
            return False

        try:
            prefix_len = int(prefix)
        except ValueError:
            return False
        max_len = network_address.max_prefixlen
        if prefix_len < 0 or prefix_len > max_len:
            return False

        mask = ((1 << max_len) - 1) ^ ((1 << (max_len - prefix_len)) - 1)
        return (int(address) & mask) == (int(network_address) & mask)

    @classmethod
    def matches_any(cls, ip: str, ranges: Iterable[str]) -> bool:
        """Check an address against several ranges or literals."""
        for candidate in ranges:
            if cls.matches(ip, candidate):
                return True
        return False
