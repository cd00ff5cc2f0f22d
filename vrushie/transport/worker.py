"""Worker thread logic for handling individual client connections."""

import logging
import socket
import threading
from typing import Optional

from vrushie.bootstrap.config import ALLOWED_METHODS, SECURITY_HEADERS
from vrushie.domain.client_identity import client_identifier
from vrushie.domain.http_types import HttpRequest
from vrushie.domain.request_context import (
    RequestLoggerAdapter,
    bind_request,
    clear_request,
)
from vrushie.domain.response_builders import (
    bad_request_response,
    draining_response,
    entity_too_large_response,
)
from vrushie.pipeline.io import receive_request, send_response
from vrushie.pipeline.router import route_request
from vrushie.pipeline.validation import RequestEntityTooLarge, validate_request
from vrushie.transport.context import WorkerContext

WORKER_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.transport.worker"), {})


def _format_peer(client_address) -> str:
    return f"{client_address[0]}:{client_address[1]}"


def _read_request_with_validation(
    client_socket: socket.socket,
    buffer: bytes,
    client_addr_str: str,
    max_request_bytes: int,
) -> tuple[Optional[HttpRequest], bytes, bool]:
    """Read a request from the socket, answering malformed or oversize input."""
    try:
        request, buffer = receive_request(client_socket, buffer, max_request_bytes)
    except RequestEntityTooLarge:
        WORKER_LOGGER.warning(
            "Request size exceeded limit",
            extra={
                "event": "request_too_large",
                "client": client_addr_str,
                "limit": max_request_bytes,
            },
        )
        send_response(client_socket, entity_too_large_response(SECURITY_HEADERS))
        return None, b"", True
    except (ValueError, UnicodeDecodeError):
        WORKER_LOGGER.warning(
            "Malformed request received",
            extra={"event": "malformed_request", "client": client_addr_str},
        )
        send_response(client_socket, bad_request_response(None, SECURITY_HEADERS))
        return None, b"", True

    if request is None:
        if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Client disconnected",
                extra={"event": "client_disconnected", "client": client_addr_str},
            )
        return None, b"", True
    return request, buffer, False


def _process_request(
    request: HttpRequest,
    client_id: str,
    client_socket: socket.socket,
    context: WorkerContext,
) -> bool:
    validation_response = validate_request(request, ALLOWED_METHODS, SECURITY_HEADERS)
    if validation_response is not None:
        send_response(client_socket, validation_response)
        return validation_response.close_connection
    return route_request(request, client_id, client_socket, context)


def _send_draining(client_socket: socket.socket, client_addr_str: str) -> None:
    WORKER_LOGGER.info(
        "Rejecting request while draining",
        extra={"event": "request_draining", "client": client_addr_str},
    )
    send_response(client_socket, draining_response(SECURITY_HEADERS))


def _cleanup_worker(
    context: WorkerContext,
    thread: threading.Thread,
    client_socket: socket.socket,
    client_addr_str: str,
) -> None:
    context.lifecycle.cleanup_worker(thread)
    try:
        client_socket.shutdown(socket.SHUT_WR)
    except OSError:
        pass
    client_socket.close()
    if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
        WORKER_LOGGER.debug(
            "Socket closed",
            extra={"event": "socket_closed", "client": client_addr_str},
        )
    clear_request()


def handle_client(
    client_socket: socket.socket,
    client_address,
    context: WorkerContext,
) -> None:
    """Process requests on a client socket until the connection is closed."""
    buffer = b""
    client_id = client_identifier(client_address)
    client_addr_str = _format_peer(client_address)
    current_thread = threading.current_thread()
    lifecycle = context.lifecycle
    client_socket.settimeout(context.config.socket_timeout)

    try:
        while True:
            bind_request(client_id)
            if lifecycle.is_draining():
                _send_draining(client_socket, client_addr_str)
                break
            if not buffer and not lifecycle.mark_idle(current_thread):
                break

            request, buffer, should_terminate = _read_request_with_validation(
                client_socket,
                buffer,
                client_addr_str,
                context.config.max_request_bytes,
            )
            lifecycle.mark_busy(current_thread)
            if should_terminate:
                break
            if lifecycle.is_draining():
                _send_draining(client_socket, client_addr_str)
                break

            if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                WORKER_LOGGER.debug(
                    "Request line parsed",
                    extra={
                        "event": "request_line_parsed",
                        "method": request.method,
                        "route": request.path,
                    },
                )

            should_close = _process_request(request, client_id, client_socket, context)
            clear_request()
            if should_close:
                break
    except (
        ConnectionError,
        TimeoutError,
        OSError,
        UnicodeDecodeError,
    ) as error:
        WORKER_LOGGER.error(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        _cleanup_worker(context, current_thread, client_socket, client_addr_str)
