"""Tests for JSON logging and correlation IDs."""

import json
import logging
import sys
import uuid

import pytest

from mediaforge.core.logging import (
    StructuredFormatter,
    clear_correlation_id,
    correlation_scope,
    get_correlation_id,
    log_error,
    log_info,
    setup_logging,
)


def make_record(message: str = "Job %s started", args=("abc",), exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("mediaforge.test", logging.INFO, __file__, 10, message, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCorrelationId:
    def test_generated_once_per_context(self) -> None:
        clear_correlation_id()

        first = get_correlation_id()

        assert uuid.UUID(first)
        assert get_correlation_id() == first
        clear_correlation_id()

    def test_scope_restores_previous_id(self) -> None:
        with correlation_scope("outer"):
            with correlation_scope("job-1"):
                assert get_correlation_id() == "job-1"
            assert get_correlation_id() == "outer"


class TestStructuredFormatter:
    def test_json_fields(self) -> None:
        with correlation_scope("job-1"):
            payload = json.loads(StructuredFormatter().format(make_record(job_id="abc", attempt=2)))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "mediaforge.test"
        assert payload["message"] == "Job abc started"
        assert payload["correlation_id"] == "job-1"
        assert payload["source"]["line"] == 10
        assert payload["extra"] == {"job_id": "abc", "attempt": 2}

    def test_unserializable_extra_is_stringified(self) -> None:
        payload = json.loads(StructuredFormatter().format(make_record(path=object())))
        assert payload["extra"]["path"].startswith("<object object")

    def test_exception(self) -> None:
        try:
            raise RuntimeError("encoder crashed")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["exception"]["type"] == "RuntimeError"
        assert payload["exception"]["message"] == "encoder crashed"
        assert any("encoder crashed" in line for line in payload["exception"]["stack_trace"])

    def test_extra_fields_can_be_disabled(self) -> None:
        payload = json.loads(StructuredFormatter(include_extra_fields=False).format(make_record(job_id="x")))
        assert "extra" not in payload


class TestLogHelpers:
    def test_log_info_attaches_correlation_id(self, caplog) -> None:
        logger = logging.getLogger("mediaforge.test.helpers")

        with caplog.at_level(logging.INFO, logger="mediaforge.test.helpers"):
            with correlation_scope("job-7"):
                log_info(logger, "Job queued", job_id="job-7")

        record = caplog.records[-1]
        assert record.correlation_id == "job-7"
        assert record.job_id == "job-7"

    def test_log_error_keeps_exception(self, caplog) -> None:
        logger = logging.getLogger("mediaforge.test.helpers")

        with caplog.at_level(logging.ERROR, logger="mediaforge.test.helpers"):
            log_error(logger, "Job failed", ValueError("bad input"), job_id="j")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.exc_info[1].args == ("bad input",)


class TestSetupLogging:
    def test_json_handler(self, root_logging) -> None:
        setup_logging(level="debug", json_format=True)

        assert root_logging.level == logging.DEBUG
        assert len(root_logging.handlers) == 1
        assert isinstance(root_logging.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_plain_text_handler(self, root_logging) -> None:
        setup_logging(level="WARNING", json_format=False)

        formatter = root_logging.handlers[0].formatter
        assert not isinstance(formatter, StructuredFormatter)
        assert "%(correlation_id)s" in formatter._fmt
