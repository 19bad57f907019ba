"""
Webhook Metrics and JSON Logging
================================

CloudWatch custom metrics and the JSON log format used by the webhook Lambda.

For On-Call Engineers:
    Metrics under namespace "EntitlementReconciler", all with an
    Environment dimension:
    - WebhookEventsProcessed (EventType, Outcome): every delivery
    - WebhookProcessingLatencyMs (EventType): handling time per delivery
    - WebhookEventsFailed (EventType, Outcome): 5xx answers, will be redelivered
    - WebhookSignatureFailures: 400s for a bad signature; a spike right after
      a deploy usually means the signing secret was not rotated

    Logs Insights query for redelivered events:
    ```
    fields @timestamp, event_id, event_type, error_code
    | filter message = "webhook_event_processed" and outcome = "failed"
    | sort @timestamp desc
    ```

For Developers:
    - configure_json_logging() runs once at cold start; every `extra` field
      becomes a top-level JSON key
    - emit_metric() swallows its own failures: CloudWatch trouble must not
      turn a 200 into a 500 and trigger redelivery
"""

import json
import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

METRIC_NAMESPACE = "EntitlementReconciler"

EVENTS_PROCESSED = "WebhookEventsProcessed"
PROCESSING_LATENCY_MS = "WebhookProcessingLatencyMs"
EVENTS_FAILED = "WebhookEventsFailed"
SIGNATURE_FAILURES = "WebhookSignatureFailures"

_CLOUDWATCH_CONFIG = Config(
    retries={"max_attempts": 2, "mode": "standard"},
    connect_timeout=2,
    read_timeout=5,
)

# Attributes every LogRecord has; anything else on a record came from `extra`
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

MetricEmitter = Callable[..., None]


class JsonFormatter(logging.Formatter):
    """
    One JSON object per log line.

    Example:
        {"timestamp": "2025-11-17T14:30:00+00:00", "level": "INFO",
         "message": "webhook_event_processed", "logger": "src.lambdas.webhook.processor",
         "event_id": "evt_123", "outcome": "applied"}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Attach a JsonFormatter handler to the root logger, once per process."""
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h.formatter, JsonFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def get_cloudwatch_client(region_name: str | None = None) -> Any:
    region = region_name or os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
    return boto3.client("cloudwatch", region_name=region, config=_CLOUDWATCH_CONFIG)


def _dimension_list(dimensions: dict[str, str] | None) -> list[dict[str, str]]:
    merged = {**(dimensions or {}), "Environment": os.environ.get("ENVIRONMENT", "dev")}
    return [{"Name": name, "Value": value} for name, value in merged.items()]


def emit_metric(
    name: str,
    value: float,
    unit: str = "Count",
    dimensions: dict[str, str] | None = None,
    region_name: str | None = None,
) -> None:
    """
    Publish one data point to the EntitlementReconciler namespace.

    On-Call Note:
        aws cloudwatch get-metric-statistics --namespace EntitlementReconciler \
          --metric-name WebhookEventsFailed --dimensions Name=Environment,Value=prod \
          --start-time <time> --end-time <time> --period 300 --statistics Sum
    """
    datum = {
        "MetricName": name,
        "Value": value,
        "Unit": unit,
        "Timestamp": datetime.now(UTC),
        "Dimensions": _dimension_list(dimensions),
    }
    try:
        get_cloudwatch_client(region_name).put_metric_data(
            Namespace=METRIC_NAMESPACE, MetricData=[datum]
        )
    except Exception as e:
        logger.error(
            "metric_emit_failed",
            extra={"metric_name": name, "error_type": type(e).__name__},
        )
        return
    logger.debug("metric_emitted", extra={"metric_name": name, "value": value})


class Timer:
    """
    Measure a block in milliseconds, optionally emitting the result.

    Example:
        >>> with Timer(PROCESSING_LATENCY_MS, emit=False) as timer:
        ...     processor.handle_webhook(body, signature)
        >>> timer.elapsed_ms
    """

    def __init__(
        self,
        metric_name: str,
        dimensions: dict[str, str] | None = None,
        emit: bool = True,
        emitter: MetricEmitter | None = None,
    ):
        self.metric_name = metric_name
        self.dimensions = dimensions
        self.emit = emit
        self.emitter = emitter or emit_metric
        self.elapsed_ms: float = 0.0
        self._started = 0.0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if self.emit:
            self.emitter(
                self.metric_name,
                self.elapsed_ms,
                unit="Milliseconds",
                dimensions=self.dimensions,
            )
        return False
