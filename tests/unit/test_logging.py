"""Unit tests for the structured logging configuration.

Verifies that ``configure_logging()`` produces well-formed output, that the
``request_id_var`` and ``job_id_var`` context variables are propagated, and
that secret-bearing fields are redacted.
"""

from __future__ import annotations

import json
import logging
from io import StringIO

import structlog

from product_scraper.core.logging_config import (
    configure_logging,
    job_id_var,
    request_id_var,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _capture(log_level: str, emit) -> list[dict]:
    """Configure logging, run *emit*, and return the JSON records written.

    The root handler's stream is swapped for a ``StringIO`` buffer for the
    duration of the call.
    """
    configure_logging(log_level)

    buffer = StringIO()
    root = logging.getLogger()
    original_streams = []
    for handler in root.handlers:
        if hasattr(handler, "stream"):
            original_streams.append((handler, handler.stream))
            handler.stream = buffer

    try:
        emit()
    finally:
        for handler, stream in original_streams:
            handler.flush()
            handler.stream = stream

    lines = [line for line in buffer.getvalue().strip().splitlines() if line.strip()]
    return [json.loads(line) for line in lines]


def _find(records: list[dict], event: str) -> dict:
    target = next((r for r in records if r.get("event") == event), None)
    assert target is not None, f"No record with event={event!r} in {records!r}"
    return target


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestConfigureLoggingJson:
    """Verify INFO-level (production) JSON output."""

    def test_stdlib_logger_produces_json(self) -> None:
        """Engine modules log through ``logging``; their records render as JSON."""
        records = _capture(
            "INFO", lambda: logging.getLogger("product_scraper.test").info("scraper: hello %s", "world")
        )
        target = _find(records, "scraper: hello world")
        assert target["level"] == "info"
        assert target["logger"] == "product_scraper.test"
        assert "timestamp" in target

    def test_structlog_logger_keeps_bound_fields(self) -> None:
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("product_scraper.api").info(
                "scrape_job_created", job_id="abc", recipe="test-shop"
            ),
        )
        target = _find(records, "scrape_job_created")
        assert target["job_id"] == "abc"
        assert target["recipe"] == "test-shop"

    def test_level_filters_records(self) -> None:
        records = _capture(
            "WARNING", lambda: logging.getLogger("product_scraper.test").info("filtered_out")
        )
        assert not [r for r in records if r.get("event") == "filtered_out"]


class TestContextVars:
    """Verify the request and job context variables reach log records."""

    def test_request_id_appears_in_output(self) -> None:
        token = request_id_var.set("test-req-1234")
        try:
            records = _capture(
                "INFO", lambda: logging.getLogger("test").info("request_id_propagation_test")
            )
        finally:
            request_id_var.reset(token)

        assert _find(records, "request_id_propagation_test")["request_id"] == "test-req-1234"

    def test_job_id_appears_in_output(self) -> None:
        token = job_id_var.set("job-42")
        try:
            records = _capture("INFO", lambda: logging.getLogger("test").info("job_id_test"))
        finally:
            job_id_var.reset(token)

        assert _find(records, "job_id_test")["job_id"] == "job-42"

    def test_no_ids_when_unset(self) -> None:
        records = _capture("INFO", lambda: logging.getLogger("test").info("no_ids_test"))
        target = _find(records, "no_ids_test")
        assert target.get("request_id") is None
        assert target.get("job_id") is None

    def test_explicit_value_wins(self) -> None:
        token = job_id_var.set("from-context")
        try:
            records = _capture(
                "INFO",
                lambda: structlog.get_logger("test").info("explicit_job_id", job_id="explicit"),
            )
        finally:
            job_id_var.reset(token)

        assert _find(records, "explicit_job_id")["job_id"] == "explicit"


class TestRedaction:
    def test_secret_fields_redacted(self) -> None:
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("test").info(
                "fetch_configured",
                proxy_auth="user:pass",
                headers={"Cookie": "session=1", "Accept": "text/html"},
            ),
        )
        target = _find(records, "fetch_configured")
        assert target["proxy_auth"] == "[REDACTED]"
        assert target["headers"]["Cookie"] == "[REDACTED]"
        assert target["headers"]["Accept"] == "text/html"


class TestConfigureLoggingIdempotent:
    def test_calling_twice_does_not_duplicate_handlers(self) -> None:
        """Calling configure_logging() twice leaves exactly one root handler."""
        configure_logging("INFO")
        configure_logging("INFO")
        assert len(logging.getLogger().handlers) == 1
