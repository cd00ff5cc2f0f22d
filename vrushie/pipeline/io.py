"""HTTP Input/Output operations."""

import logging
import socket
import urllib.parse
from typing import Optional, Tuple

from vrushie.bootstrap.config import HEADER_DELIMITER, MAX_REQUEST_BYTES
from vrushie.domain.errors import TransferError
from vrushie.domain.http_types import HttpRequest, HttpResponse
from vrushie.domain.request_context import (
    RequestLoggerAdapter,
    get_request_id,
    set_request_id,
)
from vrushie.pipeline.validation import RequestEntityTooLarge

IO_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.io"), {})


def parse_headers(lines: list[str]) -> dict[str, str]:
    """Convert raw header lines into a lowercase-keyed dictionary."""
    parsed = {}
    for line in lines:
        if ":" in line:
            name, value = line.split(":", 1)
            parsed[name.strip().lower()] = value.strip()
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str]:
    """Parse the HTTP method and decoded path from the request line."""
    try:
        method, target, version = request_line.split(" ", 2)
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc
    if not method or not version.startswith("HTTP/"):
        raise ValueError("Invalid request line")

    parsed_target = urllib.parse.urlsplit(target)
    path = urllib.parse.unquote(parsed_target.path)
    return method, path


def determine_content_length(headers: dict[str, str], max_bytes: int) -> int:
    """Validate and return the declared Content-Length for the request."""
    header_value = headers.get("content-length")
    if header_value is None:
        return 0
    try:
        content_length = int(header_value)
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    if content_length > max_bytes:
        raise RequestEntityTooLarge
    return content_length


def receive_request(
    client_socket: socket.socket,
    buffer: bytes,
    max_bytes: int = MAX_REQUEST_BYTES,
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read bytes from the socket until a complete request is available.

    Returns ``(None, b"")`` when the peer closes the connection first.
    """
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > max_bytes:
            raise RequestEntityTooLarge
        chunk = client_socket.recv(4096)
        if not chunk:
            return None, b""
        buffer += chunk

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    if len(header_block) > max_bytes:
        raise RequestEntityTooLarge
    header_lines = header_block.decode("iso-8859-1").split("\r\n")
    method, path = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])

    incoming_request_id = headers.get("x-request-id")
    if incoming_request_id:
        set_request_id(incoming_request_id)

    content_length = determine_content_length(headers, max_bytes)

    while len(remainder) < content_length:
        chunk = client_socket.recv(4096)
        if not chunk:
            return None, b""
        remainder += chunk

    body = remainder[:content_length]
    leftover = remainder[content_length:]
    if IO_LOGGER.logger.isEnabledFor(logging.DEBUG):
        IO_LOGGER.debug(
            "Parsed request",
            extra={"event": "request_parsed", "method": method, "path": path},
        )
    return HttpRequest(method, path, headers, body), leftover


def _header_block(response: HttpResponse) -> bytes:
    headers = dict(response.headers)

    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id

    if response.content_length is not None:
        headers["Content-Length"] = str(response.content_length)
    else:
        headers["Content-Length"] = str(len(response.body))
    if response.close_connection:
        headers["Connection"] = "close"
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers.items())
    return "\r\n".join(header_lines).encode("latin-1") + b"\r\n\r\n"


def _stream_body(client_socket: socket.socket, response: HttpResponse) -> int:
    sent = 0
    try:
        for chunk in response.body_iter:
            if not chunk:
                continue
            client_socket.sendall(chunk)
            sent += len(chunk)
    except OSError as error:
        raise TransferError(f"Error during transfer: {error}", sent) from error
    if response.content_length is not None and sent != response.content_length:
        raise TransferError(
            f"Error during transfer: sent {sent} of {response.content_length} bytes",
            sent,
        )
    return sent


def send_response(client_socket: socket.socket, response: HttpResponse) -> int:
    """Serialize and send the HTTP response over the socket.

    Returns the number of body bytes written. A streamed body that cannot be
    written in full raises :class:`TransferError`.
    """
    header_block = _header_block(response)
    if response.body_iter is not None:
        try:
            client_socket.sendall(header_block)
        except OSError as error:
            raise TransferError(f"Error during transfer: {error}") from error
        sent = _stream_body(client_socket, response)
    else:
        client_socket.sendall(header_block + response.body)
        sent = len(response.body)
    if IO_LOGGER.logger.isEnabledFor(logging.DEBUG):
        IO_LOGGER.debug(
            "Sent response",
            extra={
                "event": "response_sent",
                "status_code": response.status_code,
                "bytes_out": sent,
            },
        )
    return sent
