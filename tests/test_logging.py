"""
Tests for structured logging and run ID propagation.
"""

import io
import json
import logging
import sys

import pytest

from keyswap.observability import (
    HumanFormatter,
    JSONFormatter,
    RunContext,
    configure_logging,
    generate_run_id,
    get_logger,
    get_run_id,
)


@pytest.fixture
def restore_root_logging():
    """configure_logging replaces root handlers; put the originals back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message="Swapped %s", args=("main.colors",), **extra):
    record = logging.LogRecord(
        name="keyswap.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=args,
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRunContext:
    def test_sets_and_resets(self):
        assert get_run_id() is None
        with RunContext("run-abc") as ctx:
            assert ctx.run_id == "run-abc"
            assert get_run_id() == "run-abc"
        assert get_run_id() is None

    def test_generates_time_ordered_ids(self):
        first, second = generate_run_id(), generate_run_id()
        assert first.startswith("run-")
        assert first != second

    def test_nested(self):
        with RunContext("outer"):
            with RunContext("inner"):
                assert get_run_id() == "inner"
            assert get_run_id() == "outer"


class TestFormatters:
    def test_json_fields(self):
        with RunContext("run-xyz"):
            line = JSONFormatter().format(make_record(rows=42))
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "keyswap.orchestrator"
        assert data["message"] == "Swapped main.colors"
        assert data["run_id"] == "run-xyz"
        assert data["rows"] == 42
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data and "args" not in data

    def test_json_without_run(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert "run_id" not in data

    def test_json_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]

    def test_human_format(self):
        with RunContext("run-0123456789abcdef-tail"):
            line = HumanFormatter().format(make_record())
        assert "[INFO] keyswap.orchestrator: [run-0123456789ab] Swapped main.colors" in line


class TestConfigureLogging:
    def test_json_when_not_a_tty(self, restore_root_logging):
        stream = io.StringIO()
        configure_logging("DEBUG", stream=stream)
        logging.getLogger("keyswap.test").debug("hello %s", "world")
        assert json.loads(stream.getvalue())["message"] == "hello world"

    def test_forced_human(self, restore_root_logging):
        stream = io.StringIO()
        configure_logging("INFO", json_format=False, stream=stream)
        logging.getLogger("keyswap.test").info("hello")
        assert "[INFO] keyswap.test: hello" in stream.getvalue()

    def test_level_filters(self, restore_root_logging):
        stream = io.StringIO()
        configure_logging("warning", stream=stream)
        logging.getLogger("keyswap.test").info("quiet")
        assert stream.getvalue() == ""

    def test_replaces_handlers(self, restore_root_logging):
        configure_logging("INFO", stream=io.StringIO())
        configure_logging("INFO", stream=io.StringIO())
        assert len(logging.getLogger().handlers) == 1

    def test_unknown_level(self, restore_root_logging):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("LOUD", stream=io.StringIO())

    def test_get_logger_is_stdlib_logger(self):
        assert get_logger("keyswap.backfill") is logging.getLogger("keyswap.backfill")
