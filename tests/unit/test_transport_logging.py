"""Unit tests for the accept loop and worker connection handling."""

import logging
import socket
from unittest.mock import MagicMock, patch

import pytest

from vrushie.bootstrap.config import ServerConfig
from vrushie.domain.errors import ShutdownError
from vrushie.handlers.download import TransferCoordinator
from vrushie.lifecycle.state import ServerLifecycle
from vrushie.pipeline.validation import RequestEntityTooLarge
from vrushie.transport.accept_loop import run_server
from vrushie.transport.context import WorkerContext
from vrushie.transport.worker import handle_client


@pytest.fixture(name="mock_config")
def fixture_mock_config():
    """Create a ServerConfig with short timeouts."""
    return ServerConfig(socket_timeout=1, shutdown_grace_seconds=1)


@pytest.fixture(name="mock_lifecycle")
def fixture_mock_lifecycle():
    """Create mock ServerLifecycle."""
    lifecycle = MagicMock(spec=ServerLifecycle)
    lifecycle.should_stop.side_effect = [False, True]
    lifecycle.is_draining.return_value = False
    lifecycle.mark_idle.return_value = True
    lifecycle.wait_for_workers.return_value = True
    return lifecycle


@pytest.fixture(name="worker_context")
def fixture_worker_context(mock_config, mock_lifecycle):
    coordinator = MagicMock(spec=TransferCoordinator)
    coordinator.serve.return_value = True
    return WorkerContext(coordinator=coordinator, lifecycle=mock_lifecycle, config=mock_config)


def _sent_bytes(client_sock) -> bytes:
    return b"".join(c.args[0] for c in client_sock.sendall.call_args_list)


def test_accept_loop_logs_client_accepted(mock_config, mock_lifecycle, worker_context, caplog):
    caplog.set_level(logging.DEBUG)
    logging.getLogger("vrushie").setLevel(logging.DEBUG)

    server_sock = MagicMock()
    client_sock = MagicMock()
    server_sock.accept.side_effect = [
        (client_sock, ("127.0.0.1", 12345)),
        socket.timeout(),
        socket.timeout(),
    ]
    mock_lifecycle.should_stop.side_effect = [True]

    with patch("vrushie.transport.accept_loop.threading.Thread") as thread_cls:
        run_server(server_sock, mock_config, mock_lifecycle, worker_context)

    thread_cls.return_value.start.assert_called_once()
    server_sock.close.assert_called_once()
    accepted = next(
        r for r in caplog.records if getattr(r, "event", None) == "client_accepted"
    )
    assert accepted.client == "127.0.0.1:12345"
    assert any(getattr(r, "event", None) == "server_stopped" for r in caplog.records)


def test_accept_loop_rejects_new_connections_while_draining(
    mock_config, mock_lifecycle, worker_context
):
    server_sock = MagicMock()
    client_sock = MagicMock()
    server_sock.accept.side_effect = [(client_sock, ("127.0.0.1", 1)), socket.timeout()]
    mock_lifecycle.is_draining.return_value = True
    mock_lifecycle.should_stop.side_effect = [True]

    with patch("vrushie.transport.accept_loop.threading.Thread") as thread_cls:
        run_server(server_sock, mock_config, mock_lifecycle, worker_context)

    thread_cls.assert_not_called()
    assert b"503 Service Unavailable" in _sent_bytes(client_sock)
    client_sock.close.assert_called_once()


def test_accept_loop_forces_termination_after_grace(mock_config, mock_lifecycle, worker_context):
    server_sock = MagicMock()
    server_sock.accept.side_effect = socket.timeout()
    mock_lifecycle.should_stop.side_effect = None
    mock_lifecycle.should_stop.return_value = True
    mock_lifecycle.wait_for_workers.return_value = False

    with pytest.raises(ShutdownError):
        run_server(server_sock, mock_config, mock_lifecycle, worker_context)

    mock_lifecycle.terminate_connections.assert_called_once()


def test_worker_routes_download_and_closes(worker_context, caplog):
    logging.getLogger("vrushie").setLevel(logging.DEBUG)
    caplog.set_level(logging.DEBUG)
    client_sock = MagicMock()
    client_sock.recv.side_effect = [b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n", b""]

    handle_client(client_sock, ("::ffff:10.0.0.5", 54321, 0, 0), worker_context)

    serve_args = worker_context.coordinator.serve.call_args.args
    assert serve_args[1] == "10.0.0.5"
    assert serve_args[2] is client_sock
    client_sock.close.assert_called_once()
    worker_context.lifecycle.cleanup_worker.assert_called_once()
    parsed = next(
        r for r in caplog.records if getattr(r, "event", None) == "request_line_parsed"
    )
    assert parsed.client_id == "10.0.0.5"
    assert parsed.request_id != "-"


def test_worker_answers_unknown_path_with_404(worker_context):
    client_sock = MagicMock()
    client_sock.recv.side_effect = [
        b"GET /other HTTP/1.1\r\nHost: x\r\nConnection: close\r\n\r\n"
    ]

    handle_client(client_sock, ("127.0.0.1", 1), worker_context)

    assert b"HTTP/1.1 404 Not Found" in _sent_bytes(client_sock)
    worker_context.coordinator.serve.assert_not_called()


def test_worker_answers_unsupported_method_with_405(worker_context):
    client_sock = MagicMock()
    client_sock.recv.side_effect = [b"POST / HTTP/1.1\r\nConnection: close\r\n\r\n"]

    handle_client(client_sock, ("127.0.0.1", 1), worker_context)

    sent = _sent_bytes(client_sock)
    assert b"HTTP/1.1 405 Method Not Allowed" in sent
    assert b"Allow: GET, HEAD" in sent


def test_worker_logs_request_too_large(worker_context, caplog):
    caplog.set_level(logging.WARNING)
    client_sock = MagicMock()

    with patch("vrushie.transport.worker.receive_request") as mock_recv:
        mock_recv.side_effect = RequestEntityTooLarge("Too big")
        handle_client(client_sock, ("127.0.0.1", 54321), worker_context)

    record = next(
        r for r in caplog.records if getattr(r, "event", None) == "request_too_large"
    )
    assert record.client == "127.0.0.1:54321"
    assert b"413" in _sent_bytes(client_sock)


def test_worker_logs_malformed_request(worker_context, caplog):
    caplog.set_level(logging.WARNING)
    client_sock = MagicMock()
    client_sock.recv.side_effect = [b"NONSENSE\r\n\r\n"]

    handle_client(client_sock, ("127.0.0.1", 2), worker_context)

    assert any(getattr(r, "event", None) == "malformed_request" for r in caplog.records)
    assert b"400 Bad Request" in _sent_bytes(client_sock)


def test_worker_sends_503_when_draining(worker_context):
    worker_context.lifecycle.is_draining.return_value = True
    client_sock = MagicMock()

    handle_client(client_sock, ("127.0.0.1", 3), worker_context)

    assert b"503 Service Unavailable" in _sent_bytes(client_sock)
    client_sock.recv.assert_not_called()


def test_worker_closes_idle_connection_when_drain_starts(worker_context):
    worker_context.lifecycle.mark_idle.return_value = False
    client_sock = MagicMock()

    handle_client(client_sock, ("127.0.0.1", 4), worker_context)

    client_sock.recv.assert_not_called()
    client_sock.sendall.assert_not_called()
    client_sock.close.assert_called_once()


def test_worker_logs_connection_errors(worker_context, caplog):
    caplog.set_level(logging.ERROR)
    client_sock = MagicMock()
    client_sock.recv.side_effect = ConnectionResetError("reset")

    handle_client(client_sock, ("127.0.0.1", 5), worker_context)

    record = next(
        r for r in caplog.records if getattr(r, "event", None) == "connection_error"
    )
    assert record.error_type == "ConnectionResetError"
    client_sock.close.assert_called_once()


def test_accept_loop_closes_listener_once_draining_under_load(mock_config, worker_context):
    lifecycle = ServerLifecycle()
    lifecycle.begin_draining("quota_reached")
    worker_context.lifecycle = lifecycle

    server_sock = MagicMock()
    clients = [MagicMock() for _ in range(50)]
    server_sock.accept.side_effect = [(c, ("127.0.0.1", 1000 + i)) for i, c in enumerate(clients)]

    with patch("vrushie.transport.accept_loop.threading.Thread") as thread_cls:
        run_server(server_sock, mock_config, lifecycle, worker_context)

    assert server_sock.accept.call_count == 1
    server_sock.close.assert_called_once()
    thread_cls.assert_not_called()
    assert b"503 Service Unavailable" in _sent_bytes(clients[0])


def test_accept_loop_registers_worker_before_starting_it(
    mock_config, mock_lifecycle, worker_context
):
    server_sock = MagicMock()
    client_sock = MagicMock()
    server_sock.accept.side_effect = [(client_sock, ("127.0.0.1", 7)), socket.timeout()]
    mock_lifecycle.should_stop.side_effect = [True]
    calls = []
    mock_lifecycle.register_worker.side_effect = lambda thread, sock: calls.append("register")

    with patch("vrushie.transport.accept_loop.threading.Thread") as thread_cls:
        thread_cls.return_value.start.side_effect = lambda: calls.append("start")
        run_server(server_sock, mock_config, mock_lifecycle, worker_context)

    assert calls == ["register", "start"]
    mock_lifecycle.register_worker.assert_called_once_with(thread_cls.return_value, client_sock)
