"""Tests for logging configuration helpers and the JSON formatter."""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vrushie.bootstrap.logging_setup import (
    JsonFormatter,
    RequestContextFilter,
    configure_logging,
)


def _record(name="vrushie.server", msg="format test", level=logging.INFO):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname=__file__,
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )


@pytest.fixture(name="restore_vrushie_logger")
def fixture_restore_vrushie_logger():
    logger = logging.getLogger("vrushie")
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers


def test_configure_logging_stream_handler(restore_vrushie_logger):
    adapter = configure_logging("DEBUG", "stdout")

    assert adapter.logger.name == "vrushie"
    assert adapter.logger.level == logging.DEBUG
    assert len(adapter.logger.handlers) == 1

    handler = adapter.logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    record = _record()
    record.request_id = "rid-9"
    record.client_id = "10.0.0.1"
    record.component = "server"
    log_data = json.loads(handler.formatter.format(record))
    assert log_data["component"] == "server"
    assert log_data["message"] == "format test"
    assert log_data["request_id"] == "rid-9"
    assert log_data["client_id"] == "10.0.0.1"


def test_configure_logging_text_format(restore_vrushie_logger):
    adapter = configure_logging("INFO", "stdout", use_json=False)
    handler = adapter.logger.handlers[0]
    assert not isinstance(handler.formatter, JsonFormatter)
    record = _record(msg="plain line")
    record.request_id = "-"
    record.client_id = "-"
    assert "plain line" in handler.formatter.format(record)


def test_configure_logging_file_destination(tmp_path: Path, restore_vrushie_logger):
    destination = tmp_path / "logs" / "vrushie.log"
    adapter = configure_logging("WARNING", destination.as_posix())

    assert adapter.logger.level == logging.WARNING
    handler = adapter.logger.handlers[0]
    assert handler.baseFilename == destination.as_posix()

    logging.getLogger("vrushie.server").warning("file log test")
    handler.flush()
    assert "file log test" in destination.read_text()


def test_request_context_filter_inserts_placeholders():
    record = _record(msg="missing ids")
    assert RequestContextFilter().filter(record)
    assert record.request_id == "-"
    assert record.client_id == "-"


def test_configure_logging_emits_event(restore_vrushie_logger):
    with patch("vrushie.bootstrap.logging_setup._build_handler") as mock_build:
        mock_handler = MagicMock()
        mock_handler.level = logging.INFO
        mock_build.return_value = mock_handler

        configure_logging("INFO", "stdout")

        assert mock_handler.handle.called
        record = mock_handler.handle.call_args[0][0]
        assert record.msg == "Logging configured"
        assert getattr(record, "event", None) == "logging_configured"
        assert getattr(record, "destination", None) == "stdout"
        assert getattr(record, "use_json", None) is True


def test_json_formatter_includes_whitelisted_extras_only():
    record = _record()
    record.request_id = "rid"
    record.client_id = "Server"
    record.component = "handlers.download"
    record.event = "transfer_complete"
    record.bytes_out = 1024
    record.outcome = "completed"
    record.unrelated = "hidden"

    log_data = json.loads(JsonFormatter().format(record))

    assert log_data["event"] == "transfer_complete"
    assert log_data["bytes_out"] == 1024
    assert log_data["outcome"] == "completed"
    assert "unrelated" not in log_data
    assert list(log_data) == sorted(log_data)


def test_json_formatter_serializes_exceptions():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "vrushie.test", logging.ERROR, __file__, 0, "failed", (), sys.exc_info()
        )
    log_data = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in log_data["exception"]
    assert log_data["request_id"] == "-"
    assert log_data["component"] == "unknown"
