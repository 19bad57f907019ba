"""
Unit Tests for CloudWatch Metrics and Logging Utilities
========================================================

Tests for JSON logging and metric emission.

For On-Call Engineers:
    These tests verify:
    - Logs are JSON formatted for CloudWatch Insights
    - Metrics are emitted to the EntitlementReconciler namespace
    - A CloudWatch outage never fails a webhook

For Developers:
    - CloudWatch is mocked with moto; put_metric_data is inspected via list_metrics
    - Timer is tested with an injected emitter so no AWS call is made
"""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import boto3
import pytest
from moto import mock_aws

from src.lib.metrics import (
    METRIC_NAMESPACE,
    JsonFormatter,
    Timer,
    configure_json_logging,
    emit_metric,
    get_cloudwatch_client,
)


def _record(message="webhook_event_processed", **extra):
    record = logging.LogRecord(
        name="src.lambdas.webhook.processor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_base_fields(self):
        data = json.loads(JsonFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["message"] == "webhook_event_processed"
        assert data["logger"] == "src.lambdas.webhook.processor"
        assert "timestamp" in data

    def test_extra_fields_become_keys(self):
        data = json.loads(
            JsonFormatter().format(_record(event_id="evt_1", processing_time_ms=41.7))
        )

        assert data["event_id"] == "evt_1"
        assert data["processing_time_ms"] == 41.7

    def test_reserved_attributes_are_not_duplicated(self):
        data = json.loads(JsonFormatter().format(_record()))

        assert "msg" not in data
        assert "args" not in data
        assert "lineno" not in data

    def test_non_serializable_values_use_str(self):
        data = json.loads(JsonFormatter().format(_record(when=object())))
        assert data["when"].startswith("<object")

    def test_exception_is_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))
        assert "ValueError" in data["exception"]


class TestConfigureJsonLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers = list(root.handlers)
        level = root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_installs_one_handler(self):
        root = logging.getLogger()
        root.handlers = []

        configure_json_logging()
        configure_json_logging()

        json_handlers = [h for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
        assert len(json_handlers) == 1
        assert root.level == logging.INFO


class TestEmitMetric:
    def test_metric_lands_in_namespace(self, aws_credentials):
        with mock_aws():
            emit_metric(
                "WebhookEventsProcessed",
                1,
                dimensions={"EventType": "invoice.payment_failed"},
            )

            client = boto3.client("cloudwatch", region_name="us-east-1")
            metrics = client.list_metrics(Namespace=METRIC_NAMESPACE)["Metrics"]

        assert [m["MetricName"] for m in metrics] == ["WebhookEventsProcessed"]
        dimensions = {d["Name"]: d["Value"] for d in metrics[0]["Dimensions"]}
        assert dimensions["EventType"] == "invoice.payment_failed"
        assert dimensions["Environment"] == "test"

    def test_failure_is_logged_not_raised(self, caplog):
        client = MagicMock()
        client.put_metric_data.side_effect = RuntimeError("cloudwatch down")

        with patch("src.lib.metrics.get_cloudwatch_client", return_value=client):
            with caplog.at_level(logging.ERROR):
                emit_metric("WebhookEventsFailed", 1)

        assert any(r.message == "metric_emit_failed" for r in caplog.records)

    def test_client_region(self, aws_credentials):
        with mock_aws():
            assert get_cloudwatch_client("eu-west-1").meta.region_name == "eu-west-1"


class TestTimer:
    def test_emits_milliseconds(self):
        emitter = MagicMock()

        with Timer("WebhookProcessingLatencyMs", {"EventType": "x"}, emitter=emitter) as timer:
            pass

        emitter.assert_called_once_with(
            "WebhookProcessingLatencyMs",
            timer.elapsed_ms,
            unit="Milliseconds",
            dimensions={"EventType": "x"},
        )
        assert timer.elapsed_ms >= 0

    def test_emit_false_only_measures(self):
        emitter = MagicMock()

        with Timer("WebhookProcessingLatencyMs", emit=False, emitter=emitter) as timer:
            pass

        emitter.assert_not_called()
        assert timer.elapsed_ms >= 0

    def test_exceptions_propagate(self):
        emitter = MagicMock()

        with pytest.raises(ValueError):
            with Timer("WebhookProcessingLatencyMs", emitter=emitter):
                raise ValueError("boom")

        emitter.assert_called_once()
