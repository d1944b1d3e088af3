"""Tests for the structured logging system (deal_kernel/logging_config.py)."""

import json
import logging
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from deal_kernel.domain.lifecycle import ProposalStatus
from deal_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "deal_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("proposal_sent", extra={"attempt": 2, "recipient": "a@b.test"})

        record = _parse_log(stream)
        assert record["attempt"] == 2
        assert record["recipient"] == "a@b.test"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="req-1", actor_id="actor-9")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "req-1"
        assert record["actor_id"] == "actor-9"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "entity_id" not in record

    def test_payload_types_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info(
            "typed",
            extra={
                "proposal_id": uid,
                "status": ProposalStatus.SENT,
                "total": Decimal("59361.12"),
                "day": date(2026, 1, 31),
                "at": datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc),
            },
        )

        record = _parse_log(stream)
        assert record["proposal_id"] == str(uid)
        assert record["status"] == "sent"
        assert record["total"] == "59361.12"
        assert record["day"] == "2026-01-31"
        assert record["at"] == "2026-01-31T09:00:00+00:00"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_fields_extracted(self):
        """Kernel exceptions carry a .code and structured attributes."""
        from deal_kernel.exceptions import RenderFailedError

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            try:
                raise TimeoutError("page.pdf")
            except TimeoutError as cause:
                raise RenderFailedError("capture", "timed out after 30s") from cause
        except RenderFailedError:
            get_logger("test").error("render_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "RENDER_FAILED"
        assert record["exc_type"] == "RenderFailedError"
        assert record["exc_phase"] == "capture"
        assert record["exc_detail"] == "timed out after 30s"
        assert "TimeoutError" in record["exc_cause"]

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", entity_id="y")

        assert LogContext.get_all() == {"correlation_id": "x", "entity_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()

        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(operation="outer")
        with LogContext.bind(operation="proposal.send"):
            assert LogContext.get_all()["operation"] == "proposal.send"
        assert LogContext.get_all()["operation"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        with LogContext.bind(entity_id="temp"):
            assert LogContext.get_all()["entity_id"] == "temp"
        assert "entity_id" not in LogContext.get_all()

    def test_bind_stringifies_and_skips_unknown(self):
        uid = uuid4()
        with LogContext.bind(actor_id=uid, tenant="ignored", entity_id=None):
            assert LogContext.get_all() == {"actor_id": str(uid)}

    def test_bind_restores_after_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(correlation_id="inner"):
                raise RuntimeError("boom")

        assert LogContext.get_all() == {}

    def test_nested_bind_merges_fields(self):
        with LogContext.bind(operation="contract.sign", actor_id="a"):
            with LogContext.bind(entity_id="e", actor_id="b"):
                assert LogContext.get_all() == {
                    "operation": "contract.sign",
                    "actor_id": "b",
                    "entity_id": "e",
                }
            assert LogContext.get_all() == {"operation": "contract.sign", "actor_id": "a"}

    def test_context_does_not_leak_across_threads(self):
        seen = []
        LogContext.set(correlation_id="main")
        worker = threading.Thread(target=lambda: seen.append(LogContext.get_all()))
        worker.start()
        worker.join()

        assert seen == [{}]
        assert LogContext.get_all() == {"correlation_id": "main"}

    def test_all_fields(self):
        LogContext.set(correlation_id="c", actor_id="a", entity_id="e", operation="o")

        assert LogContext.get_all() == {
            "correlation_id": "c",
            "actor_id": "a",
            "entity_id": "e",
            "operation": "o",
        }


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op

        assert logging.getLogger("deal_kernel").handlers == [h1]

    def test_get_logger_returns_child(self):
        assert get_logger("services.proposal").name == "deal_kernel.services.proposal"

    def test_logger_hierarchy(self):
        """Child loggers inherit the deal_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "deal_kernel.deep.nested.module"

    def test_stream_argument(self):
        stream = StringIO()
        configure_logging(stream=stream)
        get_logger("test").warning("to_stream")

        assert _parse_log(stream)["message"] == "to_stream"
