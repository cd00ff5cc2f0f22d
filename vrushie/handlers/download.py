"""Per-request download flow: policy check, streaming, accounting, shutdown trigger."""

import logging
import os
import socket
import time
from pathlib import Path
from typing import BinaryIO, Iterator

from vrushie.bootstrap.config import DEFAULT_CHUNK_SIZE, SECURITY_HEADERS
from vrushie.domain.errors import AccessDenied, LocalIOError, TransferError
from vrushie.domain.http_types import HttpRequest
from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.domain.response_builders import (
    attachment_response,
    forbidden_response,
    internal_error_response,
)
from vrushie.lifecycle.state import TRIGGER_QUOTA, ServerLifecycle
from vrushie.observer.activity import (
    SERVER_CLIENT_ID,
    ActivityFeed,
    ActivityRecord,
    Outcome,
)
from vrushie.pipeline.io import send_response
from vrushie.session.state import SessionState

DOWNLOAD_LOGGER = RequestLoggerAdapter(
    logging.getLogger("vrushie.handlers.download"), {}
)

QUOTA_REACHED_MESSAGE = "Download limit reached. Shutting down..."


class TargetFile:
    """The single file offered for download."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @property
    def name(self) -> str:
        return self.path.name

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError as error:
            raise LocalIOError(f"Error opening file: {error}") from error

    def open(self) -> tuple[BinaryIO, int]:
        """Open the file read-only and return the handle with its current size."""
        try:
            handle = open(self.path, "rb")  # pylint: disable=consider-using-with
        except OSError as error:
            raise LocalIOError(f"Error opening file: {error}") from error
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as error:
            handle.close()
            raise LocalIOError(f"Error opening file: {error}") from error
        return handle, size


def stream_file(
    handle: BinaryIO, size: int, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[bytes]:
    """Yield at most ``size`` bytes of ``handle`` in fixed-size chunks."""
    remaining = size
    while remaining > 0:
        try:
            chunk = handle.read(min(chunk_size, remaining))
        except OSError as error:
            raise LocalIOError(f"Error reading file: {error}") from error
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


class TransferCoordinator:
    """Runs one download request through its lifecycle.

    Received, then policy checked, then either rejected or streamed; a stream
    either fails (reservation released) or completes and is accounted, and the
    completion that reaches the effective limit starts the shutdown.
    """

    def __init__(
        self,
        target: TargetFile,
        session: SessionState,
        feed: ActivityFeed,
        lifecycle: ServerLifecycle,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        # pylint: disable=too-many-arguments, too-many-positional-arguments
        self.target = target
        self.session = session
        self.feed = feed
        self.lifecycle = lifecycle
        self.chunk_size = chunk_size

    def _publish(self, client_id: str, outcome: Outcome, message: str) -> None:
        self.feed.publish(ActivityRecord.now(client_id, outcome, message))

    def authorize(self, client_id: str) -> None:
        """Admit and reserve a transfer slot, or raise :class:`AccessDenied`."""
        decision = self.session.authorize(client_id)
        if not decision.allowed:
            raise AccessDenied(decision.reason, decision.code)

    def serve(
        self, request: HttpRequest, client_id: str, client_socket: socket.socket
    ) -> bool:
        """Handle a request for the file; returns True if the connection must close."""
        if request.method == "HEAD":
            return self._serve_head(request, client_id, client_socket)

        try:
            self.authorize(client_id)
        except AccessDenied as denial:
            return self._reject(request, client_id, client_socket, denial)

        self._publish(client_id, Outcome.ALLOWED, "Connected & Allowed")
        try:
            handle, size = self.target.open()
        except LocalIOError as error:
            self.session.release()
            DOWNLOAD_LOGGER.error(
                "Failed to open target file",
                extra={
                    "event": "file_open_failed",
                    "path": self.target.path.as_posix(),
                    "error": str(error),
                },
            )
            self._publish(client_id, Outcome.ERROR, str(error))
            send_response(client_socket, internal_error_response(SECURITY_HEADERS))
            return True

        DOWNLOAD_LOGGER.info(
            "Transfer started",
            extra={"event": "transfer_started", "file_name": self.target.name, "size": size},
        )
        started = time.monotonic()
        try:
            with handle:
                response = attachment_response(
                    request,
                    self.target.name,
                    size,
                    stream_file(handle, size, self.chunk_size),
                    SECURITY_HEADERS,
                )
                sent = send_response(client_socket, response)
        except (TransferError, LocalIOError) as error:
            self.session.release()
            DOWNLOAD_LOGGER.warning(
                "Transfer failed",
                extra={
                    "event": "transfer_failed",
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "bytes_out": getattr(error, "bytes_sent", None),
                },
            )
            self._publish(client_id, Outcome.FAILED, str(error))
            return True
        except Exception:
            self.session.release()
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        self._account(client_id, sent, duration_ms)
        return True

    def _reject(
        self,
        request: HttpRequest,
        client_id: str,
        client_socket: socket.socket,
        denial: AccessDenied,
    ) -> bool:
        # pylint: disable=too-many-arguments, too-many-positional-arguments
        DOWNLOAD_LOGGER.warning(
            "Access denied",
            extra={"event": "access_denied", "reason": denial.reason, "code": denial.code},
        )
        self._publish(client_id, Outcome.REJECTED, f"Rejected: {denial.reason}")
        response = forbidden_response(denial.reason, request, SECURITY_HEADERS)
        send_response(client_socket, response)
        return response.close_connection

    def _account(self, client_id: str, sent: int, duration_ms: int) -> None:
        completed, reached = self.session.record_completion()
        DOWNLOAD_LOGGER.info(
            "Transfer complete",
            extra={
                "event": "transfer_complete",
                "bytes_out": sent,
                "duration_ms": duration_ms,
                "completed": completed,
            },
        )
        self._publish(client_id, Outcome.COMPLETED, "Download Complete")
        if not reached:
            return
        DOWNLOAD_LOGGER.info(
            "Download limit reached",
            extra={
                "event": "quota_reached",
                "completed": completed,
                "limit": self.session.policy.effective_limit,
            },
        )
        self._publish(SERVER_CLIENT_ID, Outcome.SHUTDOWN, QUOTA_REACHED_MESSAGE)
        self.lifecycle.begin_draining(TRIGGER_QUOTA)

    def _serve_head(
        self, request: HttpRequest, client_id: str, client_socket: socket.socket
    ) -> bool:
        decision = self.session.peek(client_id)
        if not decision.allowed:
            if DOWNLOAD_LOGGER.logger.isEnabledFor(logging.DEBUG):
                DOWNLOAD_LOGGER.debug(
                    "HEAD probe denied",
                    extra={"event": "head_denied", "reason": decision.reason},
                )
            response = forbidden_response(decision.reason, request, SECURITY_HEADERS)
            response.content_length = len(response.body)
            response.body = b""
            send_response(client_socket, response)
            return response.close_connection
        try:
            size = self.target.size()
        except LocalIOError as error:
            DOWNLOAD_LOGGER.error(
                "Failed to stat target file",
                extra={"event": "file_open_failed", "error": str(error)},
            )
            send_response(client_socket, internal_error_response(SECURITY_HEADERS))
            return True
        response = attachment_response(
            request, self.target.name, size, None, SECURITY_HEADERS
        )
        send_response(client_socket, response)
        return response.close_connection
