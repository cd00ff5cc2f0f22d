"""Per-request context (request id and client id) stored in contextvars."""

import contextvars
import logging
import uuid
from typing import Any, MutableMapping, Optional

_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_client_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "client_id", default=None
)


def generate_request_id() -> str:
    """Generate a new request ID using UUID4."""
    return str(uuid.uuid4())


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


def set_request_id(request_id: str) -> None:
    _request_id_var.set(request_id)


def get_client_id() -> Optional[str]:
    return _client_id_var.get()


def bind_request(client_id: str) -> str:
    """Start a new request scope for ``client_id`` and return its request id."""
    request_id = generate_request_id()
    _request_id_var.set(request_id)
    _client_id_var.set(client_id)
    return request_id


def clear_request() -> None:
    """Forget the request scope of the current thread."""
    _request_id_var.set(None)
    _client_id_var.set(None)


class RequestLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects request_id, client_id and component into records."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        if "extra" not in kwargs:
            kwargs["extra"] = {}
        else:
            kwargs["extra"] = dict(kwargs["extra"])

        request_id = get_request_id()
        client_id = get_client_id()
        kwargs["extra"]["request_id"] = request_id if request_id is not None else "-"
        kwargs["extra"].setdefault(
            "client_id", client_id if client_id is not None else "-"
        )

        logger_name = self.logger.name
        if logger_name.startswith("vrushie."):
            component = logger_name[len("vrushie.") :]
        else:
            component = logger_name
        kwargs["extra"]["component"] = component

        return msg, kwargs
