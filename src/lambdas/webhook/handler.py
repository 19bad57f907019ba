"""
Webhook Lambda Handler
======================

FastAPI application receiving billing provider webhooks.

For On-Call Engineers:
    If the provider dashboard shows failing deliveries:
    1. 400 responses: signature failures. Check the signing secret
       (STRIPE_WEBHOOK_SECRET_ARN) matches the endpoint in the dashboard.
    2. 503 responses: unresolved users or provider API trouble. These are
       redelivered automatically; only sustained rates need action.
    3. 500 responses: canonical store or unexpected errors. Check
       CloudWatch logs for `webhook_processing_error`.

For Developers:
    - Uses Mangum adapter for Lambda Function URL compatibility
    - The raw body must reach signature verification unmodified, so the
      route reads request.body() rather than a parsed model
    - Processing is synchronous (boto3, stripe) and runs in the threadpool
    - Tests override get_processor via app.dependency_overrides

X-Ray Tracing:
    X-Ray is enabled for distributed tracing across all Lambda invocations.
"""

# X-Ray must be imported and patched before other imports
from aws_xray_sdk.core import patch_all  # noqa: E402

patch_all()

import logging  # noqa: E402
import uuid  # noqa: E402
from typing import Any  # noqa: E402

from fastapi import Depends, FastAPI, Request  # noqa: E402
from fastapi.concurrency import run_in_threadpool  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from mangum import Mangum  # noqa: E402

from src.lambdas.shared.billing.stripe_client import StripeBillingClient  # noqa: E402
from src.lambdas.shared.canonical_store import DynamoDBCanonicalStore  # noqa: E402
from src.lambdas.shared.canonical_update import CanonicalUpdater  # noqa: E402
from src.lambdas.shared.errors import ErrorCode, error_response  # noqa: E402
from src.lambdas.shared.logging_utils import redact_sensitive_fields  # noqa: E402
from src.lambdas.webhook.config import get_config  # noqa: E402
from src.lambdas.webhook.processor import EventProcessor  # noqa: E402
from src.lib.metrics import configure_json_logging  # noqa: E402

configure_json_logging()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

# Generic text only; error detail stays in the logs
_PUBLIC_MESSAGES = {
    ErrorCode.INVALID_SIGNATURE.value: "Invalid webhook signature",
    ErrorCode.VALIDATION_ERROR.value: "Malformed webhook payload",
    ErrorCode.UNRESOLVED_USER.value: "User not yet available",
    ErrorCode.PROVIDER_UNAVAILABLE.value: "Billing provider unavailable",
    ErrorCode.DATABASE_ERROR.value: "Storage unavailable",
}

_processor: EventProcessor | None = None


def get_processor() -> EventProcessor:
    """
    Build the EventProcessor once per Lambda container.

    Configuration and secrets load on first use so a bad deploy fails the
    request with a 500 (redelivered) instead of crashing the import.
    """
    global _processor
    if _processor is None:
        config = get_config()
        store = DynamoDBCanonicalStore(
            table_name=config.dynamodb_table,
            customer_index=config.customer_index_name,
        )
        billing = StripeBillingClient(
            config.resolve_api_key(),
            timeout_seconds=config.provider_timeout_seconds,
        )
        updater = CanonicalUpdater(store, free_workout_limit=config.free_workout_limit)
        _processor = EventProcessor(
            billing=billing,
            updater=updater,
            webhook_secret=config.resolve_webhook_secret(),
            config=config,
        )
    return _processor


def _request_id(request: Request) -> str:
    context = request.scope.get("aws.context")
    request_id = getattr(context, "aws_request_id", None)
    return request_id or str(uuid.uuid4())


app = FastAPI(
    title="Entitlement Webhook",
    description="Billing provider webhook ingestion",
    version="1.0.0",
)


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    processor: EventProcessor = Depends(get_processor),
):
    """Receive one webhook delivery.

    200 acknowledges; 400 tells the provider not to redeliver; 5xx asks it to.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    result = await run_in_threadpool(processor.handle_webhook, body, signature)

    if result.status_code == 200:
        return JSONResponse(status_code=200, content=result.to_response_body())

    if result.error_code == ErrorCode.INVALID_SIGNATURE.value:
        logger.debug(
            "webhook_signature_rejected_headers",
            extra={"headers": redact_sensitive_fields(dict(request.headers))},
        )

    content = error_response(
        result.status_code,
        _PUBLIC_MESSAGES.get(result.error_code or "", "Webhook processing failed"),
        result.error_code or ErrorCode.INTERNAL_ERROR,
        _request_id(request),
        details={
            "eventId": result.event_id,
            "eventType": result.event_type,
            "processingTimeMs": round(result.processing_time_ms, 2),
        },
        # Processor already logged the outcome
        log_error=False,
    )
    return JSONResponse(status_code=result.status_code, content=content)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# Mangum adapter for AWS Lambda
handler = Mangum(app, lifespan="off")


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    AWS Lambda entry point.

    Wraps the FastAPI app with Mangum for Lambda Function URL compatibility.
    """
    return handler(event, context)
