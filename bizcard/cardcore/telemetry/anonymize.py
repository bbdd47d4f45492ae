"""IP address anonymization for recorded analytics events."""

from __future__ import annotations

import ipaddress
import logging

logger = logging.getLogger(__name__)

IPV4_KEEP_BITS = 24  # first three octets
IPV6_KEEP_BITS = 64  # first four groups


def anonymize_ip(address: str | None) -> str:
    """Irreversibly truncate an address.

    IPv4 keeps the first three octets (192.168.1.57 -> 192.168.1.0).
    IPv6 keeps the first four groups
    (2001:db8:85a3:8d3:1319:8a2e:370:7348 -> 2001:db8:85a3:8d3::).
    IPv4-mapped IPv6 addresses are truncated as IPv4.

    Args:
        address: Raw client address

    Returns:
        Anonymized address, "0.0.0.0" for empty input, or the input
        unchanged when it is not an IP address
    """
    if not address:
        return "0.0.0.0"

    candidate = address.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    candidate = candidate.split("%", 1)[0]

    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        logger.debug(f"Unrecognized address format, left as-is: {address!r}")
        return address

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    keep = IPV4_KEEP_BITS if ip.version == 4 else IPV6_KEEP_BITS
    network = ipaddress.ip_network(f"{ip}/{keep}", strict=False)
    return str(network.network_address)
