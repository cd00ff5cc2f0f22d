"""Request routing logic."""

import logging
import socket

from vrushie.bootstrap.config import DOWNLOAD_PATH, SECURITY_HEADERS
from vrushie.domain.http_types import HttpRequest
from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.domain.response_builders import not_found_response
from vrushie.pipeline.io import send_response
from vrushie.transport.context import WorkerContext

ROUTER_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.pipeline.router"), {})


def route_request(
    request: HttpRequest,
    client_id: str,
    client_socket: socket.socket,
    context: WorkerContext,
) -> bool:
    """Dispatch the request and return True if the connection should close."""
    if request.path == DOWNLOAD_PATH:
        if ROUTER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            ROUTER_LOGGER.debug(
                "Route matched", extra={"event": "route_matched", "route": DOWNLOAD_PATH}
            )
        return context.coordinator.serve(request, client_id, client_socket)

    ROUTER_LOGGER.info(
        "No route matched",
        extra={"event": "route_not_found", "route": request.path},
    )
    response = not_found_response(request, SECURITY_HEADERS)
    send_response(client_socket, response)
    return response.close_connection
