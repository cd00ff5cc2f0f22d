"""Server configuration and CLI argument parsing."""

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from vrushie.domain.errors import ConfigError
from vrushie.domain.request_context import RequestLoggerAdapter
from vrushie.policy.access import PolicyConfig

CONFIG_LOGGER = RequestLoggerAdapter(logging.getLogger("vrushie.config"), {})

VERSION = "1.0.2"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


MAX_REQUEST_BYTES = _env_int("VRUSHIE_MAX_REQUEST_BYTES", 64 * 1024)
DEFAULT_PORT = _env_int("VRUSHIE_PORT", 0)
DEFAULT_HOST = _env_str("VRUSHIE_HOST", "")
DEFAULT_SOCKET_TIMEOUT = _env_int("VRUSHIE_SOCKET_TIMEOUT", 60)
DEFAULT_SHUTDOWN_GRACE_SECONDS = _env_int("VRUSHIE_SHUTDOWN_GRACE_SECONDS", 10)
DEFAULT_ACTIVITY_QUEUE_SIZE = _env_int("VRUSHIE_ACTIVITY_QUEUE_SIZE", 64)
DEFAULT_ACTIVITY_HISTORY = _env_int("VRUSHIE_ACTIVITY_HISTORY", 10)
DEFAULT_CHUNK_SIZE = _env_int("VRUSHIE_CHUNK_SIZE", 64 * 1024)

HEADER_DELIMITER = b"\r\n\r\n"
DOWNLOAD_PATH = "/"
ALLOWED_METHODS = {"GET", "HEAD"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}


@dataclass
class ServerConfig:
    """Server configuration including timeouts and shutdown settings."""

    socket_timeout: int
    shutdown_grace_seconds: int
    max_request_bytes: int = MAX_REQUEST_BYTES
    chunk_size: int = DEFAULT_CHUNK_SIZE


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for server configuration."""
    parser = argparse.ArgumentParser(
        prog="vrushie",
        description=(
            "Serve a single file once, to the first N unique clients, "
            "or to a fixed list of IPs, then shut down."
        ),
    )
    parser.add_argument("file", help="Path of the file to serve")
    parser.add_argument(
        "-v", "--version", action="version", version=f"vrushie {VERSION}"
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Bind address (default: all)")
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="Port to listen on (0 for random available port)",
    )
    parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=None,
        help=(
            "Downloads allowed (1 = serve once, >1 = serve to N unique IPs; "
            "with --ips, 0 = no limit)"
        ),
    )
    parser.add_argument(
        "--ips",
        default="",
        help="Comma-separated list of specific IPs allowed to connect",
    )
    default_log_level = os.getenv("VRUSHIE_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("VRUSHIE_LOG_DESTINATION", "stdout")
    default_log_format = os.getenv("VRUSHIE_LOG_FORMAT", "json").lower()
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--log-format",
        default=default_log_format,
        choices=["json", "text"],
        type=str.lower,
    )
    parser.add_argument(
        "--socket-timeout",
        type=int,
        default=DEFAULT_SOCKET_TIMEOUT,
        help="Socket timeout in seconds for request processing",
    )
    parser.add_argument(
        "--shutdown-grace-seconds",
        type=int,
        default=DEFAULT_SHUTDOWN_GRACE_SECONDS,
        help="Grace period in seconds for in-flight transfers during shutdown",
    )
    return parser.parse_args(argv)


def parse_ip_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_policy_config(args: argparse.Namespace) -> PolicyConfig:
    """Translate CLI flags into an access policy.

    ``--ips`` selects whitelist mode bounded by ``-n`` completed downloads
    (one when omitted); ``-n 0`` or below lifts the bound. Otherwise ``-n 1``
    (the default) serves once and ``-n N`` serves the first N unique clients.
    """
    limit: Optional[int] = args.limit
    if args.ips.strip():
        identifiers = parse_ip_list(args.ips)
        if not identifiers:
            raise ConfigError("--ips did not contain any addresses")
        if limit is None:
            limit = 1
        return PolicyConfig.whitelist(identifiers, limit if limit >= 1 else None)

    if limit is None:
        return PolicyConfig.serve_once()
    if limit < 1:
        CONFIG_LOGGER.warning(
            "-n must be 1 or greater, defaulting to serve-once",
            extra={"event": "limit_defaulted", "limit": limit},
        )
        return PolicyConfig.serve_once()
    if limit == 1:
        return PolicyConfig.serve_once()
    return PolicyConfig.first_n_unique(limit)


def resolve_target_file(raw_path: str) -> Path:
    """Return the absolute path of the file to serve, validating it exists."""
    path = Path(raw_path).expanduser()
    if not path.exists():
        raise ConfigError(f"File not found: {raw_path}")
    if not path.is_file():
        raise ConfigError(f"Not a regular file: {raw_path}")
    return path.resolve()


def build_server_config(args: argparse.Namespace) -> ServerConfig:
    """Validate numeric settings and return the runtime server configuration."""
    if not 0 <= args.port <= 65535:
        raise ConfigError(f"Port out of range: {args.port}")
    if args.socket_timeout <= 0:
        raise ConfigError("--socket-timeout must be positive")
    if args.shutdown_grace_seconds <= 0:
        raise ConfigError("--shutdown-grace-seconds must be positive")
    return ServerConfig(
        socket_timeout=args.socket_timeout,
        shutdown_grace_seconds=args.shutdown_grace_seconds,
    )
