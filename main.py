"""Vrushie: serve one file to a bounded audience, then shut down."""

import logging
import signal
import sys
from typing import Optional

from vrushie.bootstrap.addresses import local_addresses, serving_urls
from vrushie.bootstrap.config import (
    DEFAULT_ACTIVITY_HISTORY,
    DEFAULT_ACTIVITY_QUEUE_SIZE,
    VERSION,
    build_policy_config,
    build_server_config,
    parse_cli_args,
    resolve_target_file,
)
from vrushie.bootstrap.logging_setup import configure_logging
from vrushie.bootstrap.socket_factory import bound_port, create_server_socket
from vrushie.domain.errors import BindError, ConfigError, LocalIOError, ShutdownError
from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.handlers.download import TargetFile, TransferCoordinator
from vrushie.lifecycle.state import TRIGGER_MANUAL, ServerLifecycle
from vrushie.observer.activity import ActivityFeed, ActivityObserver
from vrushie.observer.status import ServiceStatus, format_bytes
from vrushie.session.state import SessionState
from vrushie.transport.accept_loop import run_server
from vrushie.transport.context import WorkerContext

SERVER_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.server"), {})

WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def _install_signal_handlers(lifecycle: ServerLifecycle) -> None:
    def shutdown_handler(signum: int, _frame) -> None:
        SERVER_LOGGER.info(
            "Received shutdown signal",
            extra={"event": "signal_received", "signal": signum},
        )
        lifecycle.begin_draining(TRIGGER_MANUAL)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)


def _log_summary(status: ServiceStatus) -> None:
    snapshot = status.snapshot()
    SERVER_LOGGER.info(
        "Session summary",
        extra={
            "event": "session_summary",
            "completed": snapshot.completed,
            "count": snapshot.admitted_count,
            "limit": snapshot.limit,
            "error": snapshot.last_error,
        },
    )


def main(argv: Optional[list[str]] = None) -> int:
    """Start the server and return the process exit status."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.log_level, args.log_destination, args.log_format == "json")

    try:
        config = build_server_config(args)
        policy = build_policy_config(args)
        target = TargetFile(resolve_target_file(args.file))
        file_size = target.size()
    except (ConfigError, LocalIOError) as error:
        SERVER_LOGGER.critical(
            "Invalid configuration",
            extra={"event": "config_invalid", "error": str(error)},
        )
        return 1

    lifecycle = ServerLifecycle()
    session = SessionState(policy)
    feed = ActivityFeed(DEFAULT_ACTIVITY_QUEUE_SIZE)
    observer = ActivityObserver(feed, DEFAULT_ACTIVITY_HISTORY)
    status = ServiceStatus(session, lifecycle, observer, target.name, file_size)
    coordinator = TransferCoordinator(target, session, feed, lifecycle, config.chunk_size)
    context = WorkerContext(coordinator=coordinator, lifecycle=lifecycle, config=config)

    try:
        server_socket = create_server_socket(args.host, args.port)
    except BindError as error:
        status.record_fatal(error)
        return 1

    port = bound_port(server_socket)
    addresses = local_addresses() if args.host in WILDCARD_HOSTS else [args.host]
    urls = serving_urls(addresses, port)
    status.mark_ready(urls)
    _install_signal_handlers(lifecycle)
    observer.start()

    SERVER_LOGGER.info(
        "Server listening for connections",
        extra={
            "event": "server_listening",
            "host": args.host,
            "port": port,
            "urls": urls,
            "mode": policy.describe(),
            "file_name": target.name,
            "size": format_bytes(file_size),
            "grace_seconds": config.shutdown_grace_seconds,
            "version": VERSION,
        },
    )

    exit_code = 0
    try:
        run_server(server_socket, config, lifecycle, context)
    except ShutdownError as error:
        status.record_fatal(error)
        SERVER_LOGGER.error(
            "Shutdown did not complete in time",
            extra={"event": "shutdown_forced", "error": str(error)},
        )
        exit_code = 1
    finally:
        observer.stop()
        _log_summary(status)
    SERVER_LOGGER.info(
        "Server exiting",
        extra={"event": "server_exit", "trigger": lifecycle.trigger},
    )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
