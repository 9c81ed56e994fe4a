"""
Tests for JSON log formatting and per-request log fields.
"""

import json
import logging
from types import SimpleNamespace

from smsrelay.logging_utils import RelayJsonFormatter, log_request_data, request_id_ctx


def format_record(message="hello", **extra):
    formatter = RelayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("smsrelay.test", logging.WARNING, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestRelayJsonFormatter:
    def test_standard_fields(self):
        line = format_record()

        assert line["message"] == "hello"
        assert line["level"] == "WARNING"
        assert line["name"] == "smsrelay.test"
        assert line["ts"].endswith("Z")
        assert "request_id" not in line

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-123")
        try:
            line = format_record()
        finally:
            request_id_ctx.reset(token)

        assert line["request_id"] == "req-123"

    def test_extra_fields_kept(self):
        line = format_record(result="subscribed")
        assert line["result"] == "subscribed"


class TestLogRequestData:
    def test_merges_and_drops_none(self):
        request = SimpleNamespace(state=SimpleNamespace())

        log_request_data(request, result="message", phone=None)
        log_request_data(request, extra="x")

        assert request.state.extra_log_data == {"result": "message", "extra": "x"}

    def test_request_id_header_is_unique(self, client):
        first = client.get("/health/live").headers["x-request-id"]
        second = client.get("/health/live").headers["x-request-id"]

        assert first != second
