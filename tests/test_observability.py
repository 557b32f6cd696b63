"""
Tests for logging, metrics and tracing helpers.
"""

from unittest.mock import MagicMock

import pytest
import structlog
from opentelemetry.trace import StatusCode
from prometheus_client import generate_latest

from metering.models.api import ActionType, Plan
from metering.observability.logging import add_app_context, log_context, render_enum_values
from metering.observability.metrics import metrics
from metering.observability.tracing import set_span_attributes, trace_operation


class TestLoggingProcessors:
    def test_enum_values_rendered(self):
        event_dict = {"event": "x", "plan": Plan.METERED, "action": ActionType.GENERATION, "n": 3}

        event = render_enum_values(None, "info", event_dict)

        assert event == {"event": "x", "plan": "metered", "action": "generation", "n": 3}

    def test_app_context_added(self):
        event = add_app_context(None, "info", {"event": "x"})

        assert "service" in event
        assert "version" in event


class TestLogContext:
    def test_binds_and_unbinds(self):
        with log_context(request_id="req-1"):
            assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"

        assert "request_id" not in structlog.contextvars.get_contextvars()

    def test_unbinds_on_error(self):
        with pytest.raises(ValueError):
            with log_context(request_id="req-2"):
                raise ValueError("boom")

        assert "request_id" not in structlog.contextvars.get_contextvars()


class TestSpanAttributes:
    def test_prefix_enum_and_none(self):
        span = MagicMock()

        set_span_attributes(span, plan=Plan.METERED, user_id="user-1", missing=None, count=2)

        span.set_attribute.assert_any_call("metering.plan", "metered")
        span.set_attribute.assert_any_call("metering.user_id", "user-1")
        span.set_attribute.assert_any_call("metering.count", 2)
        assert span.set_attribute.call_count == 3

    def test_non_primitive_stringified(self):
        span = MagicMock()

        set_span_attributes(span, balances=[1, 2])

        span.set_attribute.assert_called_once_with("metering.balances", "[1, 2]")


class TestTraceOperation:
    def test_yields_span(self):
        with trace_operation("noop", user_id="user-1") as span:
            assert span is not None

    def test_reraises_and_marks_error(self, monkeypatch):
        span = MagicMock()
        tracer = MagicMock()
        tracer.start_as_current_span.return_value.__enter__.return_value = span
        monkeypatch.setattr(
            "metering.observability.tracing.trace.get_tracer", lambda name: tracer
        )

        with pytest.raises(RuntimeError, match="boom"):
            with trace_operation("failing"):
                raise RuntimeError("boom")

        tracer.start_as_current_span.assert_called_once()
        assert tracer.start_as_current_span.call_args.args[0] == "metering.failing"
        status = span.set_status.call_args.args[0]
        assert status.status_code == StatusCode.ERROR
        span.record_exception.assert_called_once()


class TestMetricLabels:
    def test_label_names_are_plain_strings(self):
        metrics.record_http_request("/v1/metering/rate-limit", "POST", 200, 0.01)

        text = generate_latest().decode()

        assert (
            'metering_http_requests_total{endpoint="/v1/metering/rate-limit",'
            'method="POST",status_code="200"}'
        ) in text
        assert "MetricLabels." not in text

    def test_decision_labels(self):
        metrics.record_decision("generation", False, "DailyCapExceeded", False, 0.002)

        text = generate_latest().decode()

        assert 'action="generation",allowed="False",reason="DailyCapExceeded"' in text
