"""Main connection acceptance loop."""

import logging
import socket
import threading

from vrushie.bootstrap.config import SECURITY_HEADERS, ServerConfig
from vrushie.domain.errors import ShutdownError
from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.domain.response_builders import draining_response
from vrushie.lifecycle.state import ServerLifecycle
from vrushie.pipeline.io import send_response
from vrushie.transport.context import WorkerContext
from vrushie.transport.worker import handle_client

ACCEPT_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.transport.accept"), {})

TERMINATION_JOIN_SECONDS = 1.0


def _handle_accepted_client(
    client_socket: socket.socket,
    client_address,
    handler_context: WorkerContext,
) -> None:
    """Hand a newly accepted connection to its own worker thread.

    The worker is registered before it starts so a drain that begins in
    between still waits for it and can terminate its socket.
    """
    if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
        ACCEPT_LOGGER.debug(
            "Client connection accepted",
            extra={
                "event": "client_accepted",
                "client": f"{client_address[0]}:{client_address[1]}",
            },
        )
    thread = threading.Thread(
        target=handle_client,
        args=(client_socket, client_address, handler_context),
        daemon=False,
    )
    handler_context.lifecycle.register_worker(thread, client_socket)
    thread.start()


def _reject_draining(client_socket: socket.socket) -> None:
    try:
        send_response(client_socket, draining_response(SECURITY_HEADERS))
    except OSError as error:
        ACCEPT_LOGGER.debug(
            "Could not send draining response",
            extra={"event": "draining_send_failed", "error_type": type(error).__name__},
        )
    finally:
        client_socket.close()


def _finish_shutdown(
    server_socket: socket.socket, config: ServerConfig, lifecycle: ServerLifecycle
) -> bool:
    server_socket.close()
    ACCEPT_LOGGER.info(
        "Waiting for active connections to complete",
        extra={
            "event": "shutdown_waiting",
            "grace_seconds": config.shutdown_grace_seconds,
        },
    )
    if lifecycle.wait_for_workers(config.shutdown_grace_seconds):
        ACCEPT_LOGGER.info("Server shutdown complete", extra={"event": "server_stopped"})
        return True
    lifecycle.terminate_connections()
    lifecycle.wait_for_workers(TERMINATION_JOIN_SECONDS)
    return False


def run_server(
    server_socket: socket.socket,
    config: ServerConfig,
    lifecycle: ServerLifecycle,
    handler_context: WorkerContext,
) -> None:
    """Accept connections until shutdown begins, then drain the workers.

    Raises :class:`ShutdownError` when in-flight connections outlive the grace
    period and had to be terminated.
    """
    try:
        while True:
            try:
                client_socket, client_address = server_socket.accept()
            except socket.timeout:
                if lifecycle.should_stop():
                    break
                continue
            except OSError as error:
                if lifecycle.should_stop():
                    break
                ACCEPT_LOGGER.error(
                    "Socket accept failed",
                    extra={"event": "accept_error", "error_type": type(error).__name__},
                )
                continue

            if lifecycle.is_draining():
                _reject_draining(client_socket)
                break

            _handle_accepted_client(client_socket, client_address, handler_context)
    finally:
        clean = _finish_shutdown(server_socket, config, lifecycle)
    if not clean:
        raise ShutdownError(
            f"connections still open after {config.shutdown_grace_seconds}s grace period"
        )
