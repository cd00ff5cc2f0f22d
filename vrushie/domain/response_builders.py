"""Pure HTTP response builders."""

import urllib.parse
from typing import Iterable, Optional

from vrushie.domain.http_types import HttpRequest, HttpResponse, should_close

ATTACHMENT_CONTENT_TYPE = "application/octet-stream"


def _text_response(
    status_line: str,
    message: str,
    close_connection: bool,
    security_headers: dict[str, str],
    extra_headers: Optional[dict[str, str]] = None,
) -> HttpResponse:
    headers = {
        "Content-Type": "text/plain; charset=utf-8",
        **(extra_headers or {}),
        **security_headers,
    }
    return HttpResponse(status_line, headers, message.encode(), close_connection)


def content_disposition(filename: str) -> str:
    """Build an ``attachment`` Content-Disposition value for ``filename``.

    Non-ASCII names get an RFC 5987 ``filename*`` parameter next to an ASCII
    fallback so every client ends up with a usable name.
    """
    escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
    try:
        escaped.encode("ascii")
    except UnicodeEncodeError:
        fallback = escaped.encode("ascii", "replace").decode("ascii")
        encoded = urllib.parse.quote(filename, safe="")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"
    return f'attachment; filename="{escaped}"'


def attachment_response(
    request: HttpRequest,
    filename: str,
    size: int,
    body_iter: Optional[Iterable[bytes]],
    security_headers: dict[str, str],
) -> HttpResponse:
    """Return a 200 download response declaring the full file length.

    A download always ends the connection; HEAD requests get the same headers
    without a body.
    """
    headers = {
        "Content-Type": ATTACHMENT_CONTENT_TYPE,
        "Content-Disposition": content_disposition(filename),
        **security_headers,
    }
    is_head = request.method == "HEAD"
    return HttpResponse(
        "HTTP/1.1 200 OK",
        headers,
        b"",
        should_close(request.headers) if is_head else True,
        body_iter=None if is_head else body_iter,
        content_length=size,
    )


def forbidden_response(
    reason: str, request: Optional[HttpRequest], security_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 403 response carrying the denial reason as plain text."""
    close = should_close(request.headers) if request is not None else True
    return _text_response("HTTP/1.1 403 Forbidden", reason, close, security_headers)


def internal_error_response(security_headers: dict[str, str]) -> HttpResponse:
    """Produce a 500 response for local I/O failures; always closes."""
    return _text_response(
        "HTTP/1.1 500 Internal Server Error",
        "Internal Server Error",
        True,
        security_headers,
    )


def not_found_response(
    request: HttpRequest, security_headers: dict[str, str]
) -> HttpResponse:
    """Return a 404 response reusing the connection preference."""
    return _text_response(
        "HTTP/1.1 404 Not Found",
        "Not Found",
        should_close(request.headers),
        security_headers,
    )


def bad_request_response(
    request: Optional[HttpRequest], security_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 400 response honoring the caller's connection preference."""
    close = should_close(request.headers) if request is not None else True
    return _text_response("HTTP/1.1 400 Bad Request", "Bad Request", close, security_headers)


def entity_too_large_response(security_headers: dict[str, str]) -> HttpResponse:
    """Produce a 413 response that always closes the connection."""
    return _text_response(
        "HTTP/1.1 413 Payload Too Large", "Payload Too Large", True, security_headers
    )


def method_not_allowed_response(
    request: HttpRequest, security_headers: dict[str, str], allowed_methods
) -> HttpResponse:
    """Produce a 405 response enumerating the supported HTTP methods."""
    allow_header = ", ".join(sorted(allowed_methods))
    return _text_response(
        "HTTP/1.1 405 Method Not Allowed",
        "Method Not Allowed",
        should_close(request.headers),
        security_headers,
        {"Allow": allow_header},
    )


def draining_response(security_headers: dict[str, str]) -> HttpResponse:
    """Produce a 503 response indicating the server is draining."""
    return _text_response(
        "HTTP/1.1 503 Service Unavailable",
        "draining",
        True,
        security_headers,
        {"Connection": "close"},
    )
