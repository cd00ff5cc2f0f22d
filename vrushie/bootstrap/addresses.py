"""Discovery of the local addresses clients can use to reach the server."""

import ipaddress
import logging
import socket

from vrushie.domain.request_context import RequestLoggerAdapter

ADDRESS_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.addresses"), {})

LOOPBACK = "127.0.0.1"

# Connecting a UDP socket sends nothing; it only selects the outbound interface.
_PROBE_TARGETS = (
    (socket.AF_INET, ("192.0.2.1", 9)),
    (socket.AF_INET6, ("2001:db8::1", 9)),
)


def _usable(address: str) -> bool:
    try:
        parsed = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    return not (parsed.is_loopback or parsed.is_link_local or parsed.is_unspecified)


def _hostname_addresses() -> list[str]:
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except OSError:
        return []
    return [info[4][0] for info in infos]


def _probe_addresses() -> list[str]:
    found = []
    for family, target in _PROBE_TARGETS:
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as probe:
                probe.connect(target)
                found.append(probe.getsockname()[0])
        except OSError:
            continue
    return found


def local_addresses() -> list[str]:
    """Return non-loopback addresses of this host, IPv4 first, then 127.0.0.1."""
    candidates = _probe_addresses() + _hostname_addresses()
    ipv4: list[str] = []
    ipv6: list[str] = []
    for address in candidates:
        if not _usable(address):
            continue
        bucket = ipv6 if ":" in address else ipv4
        if address not in bucket:
            bucket.append(address)
    addresses = ipv4 + ipv6 + [LOOPBACK]
    if ADDRESS_LOGGER.logger.isEnabledFor(logging.DEBUG):
        ADDRESS_LOGGER.debug(
            "Local addresses discovered",
            extra={"event": "addresses_discovered", "count": len(addresses)},
        )
    return addresses


def serving_urls(addresses: list[str], port: int) -> list[str]:
    """Render ``http://host:port/`` URLs, bracketing IPv6 hosts."""
    urls = []
    for address in addresses:
        host = f"[{address}]" if ":" in address else address
        urls.append(f"http://{host}:{port}/")
    return urls
