"""
Tests for Logging Infrastructure
"""
import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest

from fleet_dispatch.core.logging import (
    DispatchContextFilter,
    JSONFormatter,
    bind_order,
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    order_id_var,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    token = correlation_id_var.set("")
    yield
    correlation_id_var.reset(token)


@pytest.fixture
def log_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_logger(log_stream):
    def _make(name: str) -> logging.Logger:
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())
        logger = get_logger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        return logger

    return _make


class TestCorrelationId:
    @pytest.mark.unit
    def test_generate_correlation_id(self):
        cid = generate_correlation_id()
        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        assert set_correlation_id("test1234") == "test1234"
        assert get_correlation_id() == "test1234"

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        assert len(set_correlation_id(None)) == 8

    @pytest.mark.unit
    def test_get_correlation_id_persists_generated_id(self):
        first = get_correlation_id()
        assert get_correlation_id() == first


class TestJSONFormatter:
    @pytest.mark.unit
    def test_json_format_basic(self, json_logger, log_stream):
        json_logger("test_json_basic").info("Test message")

        entry = json.loads(log_stream.getvalue())
        assert entry["level"] == "INFO"
        assert entry["message"] == "Test message"
        assert entry["logger"] == "test_json_basic"
        assert "timestamp" in entry
        assert "correlation_id" not in entry
        assert "order_id" not in entry

    @pytest.mark.unit
    def test_json_format_with_context(self, json_logger, log_stream):
        set_correlation_id("testcorr")
        with bind_order("order-1"):
            json_logger("test_json_ctx").info("Offer sent")

        entry = json.loads(log_stream.getvalue())
        assert entry["correlation_id"] == "testcorr"
        assert entry["order_id"] == "order-1"

    @pytest.mark.unit
    def test_json_format_with_exception(self, json_logger, log_stream):
        logger = json_logger("test_json_exc")
        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("Error occurred", exc_info=True)

        entry = json.loads(log_stream.getvalue())
        assert entry["level"] == "ERROR"
        assert "ValueError" in entry["exception"]

    @pytest.mark.unit
    def test_non_ascii_and_non_json_values(self, json_logger, log_stream):
        moment = datetime(2026, 1, 5, tzinfo=timezone.utc)
        json_logger("test_json_extra").info("派單", extra_data={"at": moment})

        line = log_stream.getvalue()
        assert "派單" in line
        assert json.loads(line)["extra"]["at"] == str(moment)


class TestStructuredLogger:
    @pytest.mark.unit
    def test_get_logger(self):
        logger = get_logger("test.module")
        assert logger.name == "test.module"

    @pytest.mark.unit
    def test_logger_with_extra_data(self, json_logger, log_stream):
        json_logger("test.extra").warning("Offer expired", extra_data={"driver_id": "d1", "missed": 2})

        entry = json.loads(log_stream.getvalue())
        assert entry["extra"] == {"driver_id": "d1", "missed": 2}


class TestBindOrder:
    @pytest.mark.unit
    def test_restores_previous_order(self):
        with bind_order("outer"):
            with bind_order("inner"):
                assert order_id_var.get() == "inner"
            assert order_id_var.get() == "outer"
        assert order_id_var.get() == ""

    @pytest.mark.unit
    def test_context_filter_fills_placeholders(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)

        assert DispatchContextFilter().filter(record)
        assert record.correlation_id == "-"
        assert record.order_id == "-"
