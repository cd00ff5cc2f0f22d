"""Listening socket creation."""

import logging
import socket

from vrushie.domain.errors import BindError
from vrushie.domain.request_context import RequestLoggerAdapter

SOCKET_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.socket"), {})

ACCEPT_POLL_SECONDS = 0.5


def create_server_socket(host: str, port: int) -> socket.socket:
    """Bind and listen on ``host:port``, dual-stack when binding to all interfaces.

    Raises :class:`BindError` when the address cannot be bound.
    """
    try:
        if not host and socket.has_dualstack_ipv6():
            server_socket = socket.create_server(
                ("", port), family=socket.AF_INET6, dualstack_ipv6=True
            )
        else:
            server_socket = socket.create_server((host, port))
    except OSError as error:
        SOCKET_LOGGER.critical(
            "Failed to bind listening socket",
            extra={
                "event": "bind_failed",
                "host": host,
                "port": port,
                "error": str(error),
            },
        )
        raise BindError(f"failed to listen on {host or '*'}:{port}: {error}") from error
    server_socket.settimeout(ACCEPT_POLL_SECONDS)
    return server_socket


def bound_port(server_socket: socket.socket) -> int:
    """Return the port actually bound (useful when port 0 was requested)."""
    return server_socket.getsockname()[1]
