"""Client identifier extraction from peer addresses."""

import ipaddress
from typing import Union

PeerAddress = Union[tuple, str]


def _normalize_host(host: str) -> str:
    """Collapse IPv4-mapped IPv6 addresses (dual-stack listeners) to plain IPv4."""
    try:
        address = ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return host
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return str(address.ipv4_mapped)
    return host


def _split_host_port(raw: str) -> str:
    """Strip a ``:port`` suffix from ``host:port`` or ``[v6]:port`` strings."""
    if raw.startswith("["):
        host, sep, rest = raw[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise ValueError(f"Malformed bracketed address: {raw!r}")
        return host
    host, sep, port = raw.rpartition(":")
    if not sep or not port.isdigit() or ":" in host:
        raise ValueError(f"Address has no port suffix: {raw!r}")
    return host


def client_identifier(peer: PeerAddress) -> str:
    """Return the identifier used for quota purposes for a peer address.

    Socket peers arrive as ``(host, port)`` or ``(host, port, flow, scope)``
    tuples; textual peers as ``host:port``. When the port cannot be split off
    the raw address string is used unchanged.
    """
    if isinstance(peer, tuple):
        if not peer:
            return ""
        return _normalize_host(str(peer[0]))
    try:
        host = _split_host_port(peer)
    except ValueError:
        return peer
    return _normalize_host(host)
