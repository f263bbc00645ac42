"""
Tests for the structured logging setup
"""
import json
import logging
from io import StringIO

import pytest

from outreach.core.logging import (
    JSONFormatter,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture
def captured():
    """JSON handler on a private logger; returns (attach, stream)"""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    def _attach(name: str, level: int = logging.DEBUG):
        logger = get_logger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(level)
        logger.propagate = False
        return logger

    return _attach, stream


def _lines(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestCorrelationId:
    @pytest.mark.unit
    def test_generated_ids_are_short_and_distinct(self):
        first, second = generate_correlation_id(), generate_correlation_id()

        assert len(first) == 8
        assert first != second

    @pytest.mark.unit
    def test_explicit_id_kept(self):
        assert set_correlation_id("lead-42") == "lead-42"
        assert get_correlation_id() == "lead-42"

    @pytest.mark.unit
    def test_missing_id_generated(self):
        assert len(set_correlation_id(None)) == 8


class TestJSONFormatter:
    @pytest.mark.unit
    def test_line_fields(self, captured):
        attach, stream = captured
        set_correlation_id("corr0001")

        attach("outreach.test.fields").info("Message sent", extra_data={"job_id": 7, "phone": "5511****9999"})

        entry = _lines(stream)[0]
        assert entry["level"] == "INFO"
        assert entry["message"] == "Message sent"
        assert entry["logger"] == "outreach.test.fields"
        assert entry["correlation_id"] == "corr0001"
        assert entry["extra"] == {"job_id": 7, "phone": "5511****9999"}
        assert entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_exception_included(self, captured):
        attach, stream = captured
        logger = attach("outreach.test.exc")

        try:
            raise ValueError("gateway said no")
        except ValueError:
            logger.error("Send failed", exc_info=True)

        entry = _lines(stream)[0]
        assert entry["level"] == "ERROR"
        assert "ValueError: gateway said no" in entry["exception"]

    @pytest.mark.unit
    def test_app_name_from_setup(self, captured):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level="INFO", json_format=True, app_name="outreach-test")
            attach, stream = captured
            attach("outreach.test.app").info("hello")
            assert _lines(stream)[0]["app"] == "outreach-test"
        finally:
            setup_logging(app_name="outreach")
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestLogAsyncOperation:
    @pytest.mark.unit
    async def test_success_logged_with_duration(self, captured):
        attach, stream = captured
        attach(__name__)

        @log_async_operation("nightly_cleanup")
        async def cleanup():
            return 3

        assert await cleanup() == 3
        completed = [e for e in _lines(stream) if e["extra"].get("status") == "completed"]
        assert completed[0]["extra"]["operation"] == "nightly_cleanup"
        assert completed[0]["extra"]["duration_seconds"] >= 0

    @pytest.mark.unit
    async def test_failure_logged_and_reraised(self, captured):
        attach, stream = captured
        attach(__name__)

        @log_async_operation("nightly_cleanup")
        async def cleanup():
            raise RuntimeError("db gone")

        with pytest.raises(RuntimeError):
            await cleanup()

        failed = [e for e in _lines(stream) if e["extra"].get("status") == "failed"]
        assert failed[0]["extra"]["error"] == "db gone"
        assert failed[0]["level"] == "ERROR"
