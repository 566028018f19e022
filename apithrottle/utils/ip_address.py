"""Client IP parsing and CIDR-aware rule matching.

Rules are plain strings: either a bare address (``"10.0.0.1"``) matching only
that address, or a CIDR range (``"10.0.0.0/8"``, ``"2001:db8::/32"``) matching
by prefix. Malformed client addresses never raise; they are replaced by a
link-local sentinel so a broken ``X-Forwarded-For`` value cannot crash
request evaluation.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from ipaddress import (
    IPv4Address,
    IPv4Network,
    IPv6Address,
    IPv6Network,
    ip_address,
    ip_network,
)
from typing import Iterable

logger = logging.getLogger(__name__)

IPAddress = IPv4Address | IPv6Address
IPNetwork = IPv4Network | IPv6Network

# Substituted for any address that cannot be parsed
DEFAULT_IP_ADDRESS: IPAddress = IPv4Address("169.254.0.0")

_PRIVATE_NETWORKS: tuple[IPNetwork, ...] = (
    ip_network("10.0.0.0/8"),
    ip_network("172.16.0.0/12"),
    ip_network("192.168.0.0/16"),
    ip_network("169.254.0.0/16"),
    ip_network("fd00::/8"),
)


def _strip_port(value: str) -> str:
    """Remove a trailing ``:port`` from ``ip:port`` or ``[ipv6]:port`` forms."""

    if value.startswith("["):
        end = value.find("]")
        if end != -1:
            return value[1:end]
        return value

    # A single colon means IPv4 with port; bare IPv6 has several
    if value.count(":") == 1:
        return value.split(":", 1)[0]
    return value


def parse_ip(value: str | None) -> IPAddress:
    """Parse a client address, tolerating ports and garbage.

    Args:
        value: Address as received (may include a port, whitespace, or be empty).

    Returns:
        The parsed address, or ``DEFAULT_IP_ADDRESS`` when unparseable.

    Examples:
        >>> parse_ip("10.0.0.1:5555")
        IPv4Address('10.0.0.1')
        >>> parse_ip("not-an-ip")
        IPv4Address('169.254.0.0')
    """

    if not value:
        return DEFAULT_IP_ADDRESS

    candidate = _strip_port(value.strip())
    try:
        return ip_address(candidate)
    except ValueError:
        logger.debug("ip.parse_failed", extra={"raw_ip": value[:64]})
        return DEFAULT_IP_ADDRESS


@lru_cache(maxsize=1024)
def _parse_rule(rule: str) -> IPNetwork | None:
    """Parse a rule into a network; bare addresses become single-host networks.

    Returns None for unparseable rules so they are skipped for matching.
    """

    text = rule.strip()
    try:
        if "/" in text:
            return ip_network(text, strict=False)
        return ip_network(ip_address(_strip_port(text)))
    except ValueError:
        logger.warning("ip.rule_invalid", extra={"rule": rule[:64]})
        return None


def matching_rule(rules: Iterable[str] | None, client_ip: str | None) -> str | None:
    """Return the first rule that contains ``client_ip``.

    Args:
        rules: Address or CIDR patterns, checked in iteration order.
        client_ip: Client address (raw string).

    Returns:
        The matching rule string exactly as configured, or None.
    """

    if not rules:
        return None

    address = parse_ip(client_ip)
    for rule in rules:
        network = _parse_rule(rule)
        if network is None or network.version != address.version:
            continue
        if address in network:
            return rule
    return None


def contains_ip(rules: Iterable[str] | None, client_ip: str | None) -> bool:
    """Check whether any rule contains ``client_ip``.

    Examples:
        >>> contains_ip(["10.0.0.0/8"], "10.1.2.3")
        True
        >>> contains_ip(["10.0.0.0/8"], "11.1.2.3")
        False
    """

    return matching_rule(rules, client_ip) is not None


def is_private_address(value: str | None) -> bool:
    """Classify RFC-1918, link-local and IPv6 unique-local addresses as private.

    Unparseable input maps to the link-local sentinel and is therefore private.
    """

    address = parse_ip(value)
    return any(
        address.version == network.version and address in network
        for network in _PRIVATE_NETWORKS
    )


def resolve_client_ip(forwarded_for: str | None, peer_ip: str | None) -> str:
    """Pick the client address from ``X-Forwarded-For`` or the direct peer.

    The right-most public hop in the header wins; when the header is absent or
    lists only private hops, the peer address is used.

    Args:
        forwarded_for: Raw ``X-Forwarded-For`` header value.
        peer_ip: Address of the directly connected peer.

    Returns:
        Client address string.
    """

    fallback = peer_ip or "0.0.0.0"
    if not forwarded_for:
        return fallback

    public_hops = [
        hop.strip()
        for hop in forwarded_for.split(",")
        if hop.strip() and not is_private_address(hop)
    ]
    if not public_hops:
        return fallback
    return str(parse_ip(public_hops[-1]))
