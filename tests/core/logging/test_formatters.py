"""Tests for JSON and console log formatters."""

import json
import logging
import sys

import pytest

from core.logging.context import clear_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter


def _make_record(
    msg="test message",
    level=logging.INFO,
    name="test.logger",
    exc_info=None,
    **extras,
):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extras.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clear_context():
    clear_log_context()
    yield
    clear_log_context()


class TestJSONFormatter:

    def test_formats_basic_json_with_required_fields(self):
        output = json.loads(JSONFormatter().format(_make_record()))

        assert output["level"] == "INFO"
        assert output["logger"] == "test.logger"
        assert output["message"] == "test message"
        assert output["ts"].endswith("Z")

    def test_includes_stage_and_worker_from_context(self):
        set_log_context(stage="relay_ingest", worker_id="relay-brave-tiger")

        output = json.loads(JSONFormatter().format(_make_record()))

        assert output["stage"] == "relay_ingest"
        assert output["worker_id"] == "relay-brave-tiger"

    def test_omits_empty_context(self):
        output = json.loads(JSONFormatter().format(_make_record()))

        assert "stage" not in output
        assert "batch_id" not in output

    def test_record_batch_id_wins_over_context(self):
        set_log_context(batch_id="ctx-batch")

        output = json.loads(JSONFormatter().format(_make_record(batch_id="rec-batch")))

        assert output["batch_id"] == "rec-batch"

    def test_extra_fields_are_included(self):
        record = _make_record(trigger="size", table="messages", subject="chat.a")

        output = json.loads(JSONFormatter().format(record))

        assert output["trigger"] == "size"
        assert output["table"] == "messages"
        assert output["subject"] == "chat.a"

    def test_numeric_fields_are_coerced(self):
        record = _make_record(batch_size="1000", duration_ms="12.5", partition="bad")

        output = json.loads(JSONFormatter().format(record))

        assert output["batch_size"] == 1000
        assert output["duration_ms"] == 12.5
        assert "partition" not in output or output["partition"] is None

    def test_masks_credentials_in_uris(self):
        record = _make_record(
            table_uri="abfss://user:pw@account.dfs.core.windows.net/t?sig=abc&x=1",
        )

        output = json.loads(JSONFormatter().format(record))

        assert "pw" not in output["table_uri"]
        assert "abc" not in output["table_uri"]
        assert "sig=[REDACTED]" in output["table_uri"]
        assert "x=1" in output["table_uri"]

    def test_source_location_only_for_debug_and_errors(self):
        info = json.loads(JSONFormatter().format(_make_record()))
        error = json.loads(JSONFormatter().format(_make_record(level=logging.ERROR)))

        assert "file" not in info
        assert error["file"] == "test.py:42"

    def test_exception_details(self):
        try:
            raise ValueError("bad batch")
        except ValueError:
            exc_info = sys.exc_info()

        output = json.loads(
            JSONFormatter().format(_make_record(level=logging.ERROR, exc_info=exc_info))
        )

        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "bad batch"
        assert "Traceback" in output["exception"]["stacktrace"]

    def test_non_json_values_are_serialized(self):
        from datetime import UTC, datetime

        record = _make_record(reason=datetime(2026, 1, 5, 14, 30, tzinfo=UTC))

        output = json.loads(JSONFormatter().format(record))

        assert output["reason"] == "2026-01-05T14:30:00+00:00"


class TestConsoleFormatter:

    def test_plain_output_without_colors(self):
        output = ConsoleFormatter(use_colors=False).format(_make_record())

        assert " - INFO - test message" in output
        assert "\033[" not in output

    def test_colored_level(self):
        output = ConsoleFormatter(use_colors=True).format(_make_record(level=logging.WARNING))

        assert "\033[33mWARNING\033[0m" in output

    def test_stage_and_tags(self):
        set_log_context(stage="relay_ingest")
        record = _make_record(msg="Batch committed", batch_id="b-1", trigger="timeout")

        output = ConsoleFormatter(use_colors=False).format(record)

        assert "[relay_ingest]" in output
        assert output.endswith("[batch:b-1] [timeout] Batch committed")

    def test_appends_traceback(self):
        try:
            raise RuntimeError("sink down")
        except RuntimeError:
            exc_info = sys.exc_info()

        output = ConsoleFormatter(use_colors=False).format(
            _make_record(level=logging.ERROR, exc_info=exc_info)
        )

        assert "RuntimeError: sink down" in output
