"""
Pytest Configuration and Shared Fixtures
=========================================

Common fixtures used across all test modules.

Everything runs locally: AWS is mocked with moto and the billing provider and
canonical store have in-memory fakes. No test reaches a real endpoint.

For On-Call Engineers:
    If tests fail with AWS credential errors:
    1. Ensure moto is properly mocking (check the mock_aws context)
    2. Verify AWS env vars are set in fixtures

    If tests fail with "Unexpected ERROR/WARNING logs":
    1. The test is catching a real issue - investigate the logs
    2. If the log is expected, assert on it with assert_error_logged()

For Developers:
    - fake_store / fake_billing are in-memory collaborators that count calls
    - dynamodb_table creates the single table plus the by_customer_id GSI
    - fast_config shrinks every engine timing so async tests stay quick
"""

import logging
import os

import boto3
import pytest
from moto import mock_aws

from tests.fixtures.mocks.fake_billing import FakeBillingClient
from tests.fixtures.mocks.fake_canonical_store import FakeCanonicalStore

TEST_TABLE_NAME = "test-entitlements"

# Set default test environment variables at module load time
# This allows test files to import modules that read env vars at import time.
# setdefault() only sets if NOT already present, so CI values take precedence.
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

# Disable X-Ray SDK in tests to suppress "cannot find the current segment" errors.
# X-Ray requires a Lambda runtime context with an active segment.
os.environ.setdefault("AWS_XRAY_SDK_ENABLED", "false")

os.environ.setdefault("DYNAMODB_TABLE", TEST_TABLE_NAME)
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_123")
os.environ.setdefault("ENVIRONMENT", "test")


@pytest.fixture(autouse=True)
def reset_env_vars():
    """
    Reset environment variables after each test.

    Ensures tests don't pollute each other's environment.
    """
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def aws_credentials():
    """
    Set up mock AWS credentials for moto.

    Use this fixture when testing AWS SDK calls.
    """
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_REGION"] = "us-east-1"

    yield


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Mocked entitlement table: PK/SK plus the by_customer_id GSI."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name="us-east-1")
        table = resource.create_table(
            TableName=TEST_TABLE_NAME,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
                {"AttributeName": "customer_id", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "by_customer_id",
                    "KeySchema": [{"AttributeName": "customer_id", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        yield table


@pytest.fixture
def fake_store():
    return FakeCanonicalStore()


@pytest.fixture
def fake_billing():
    return FakeBillingClient()


@pytest.fixture
def fast_config(tmp_path):
    """EntitlementConfig with millisecond-scale timings."""
    from src.lib.entitlements.config import EntitlementConfig

    return EntitlementConfig(
        cache_timeout_seconds=60,
        local_fallback_dir=str(tmp_path / "fallback"),
        local_fallback_max_age_seconds=3600,
        store_poll_interval_seconds=0.01,
        health_check_interval_seconds=0.01,
        recovery_max_attempts=3,
        recovery_base_delay_seconds=0.001,
        recovery_max_delay_seconds=0.002,
        recovery_cooldown_seconds=300,
        recovery_max_attempts_per_cooldown=3,
        activation_poll_initial_seconds=0.01,
        activation_poll_multiplier=1.5,
        activation_poll_max_seconds=0.02,
        activation_timeout_seconds=0.2,
    )


# =============================================================================
# Log Validation Helpers
# =============================================================================
#
# Production code logs normally (never test-aware); tests explicitly
# assert on expected logs using caplog.


def assert_error_logged(caplog, pattern: str):
    """
    Helper to assert an ERROR (or higher) log was captured.

    Example:
        def test_not_found(caplog):
            await manager.fix_subscription("sub_missing")
            assert_error_logged(caplog, "recovery_not_found")
    """
    assert any(
        pattern in record.message
        for record in caplog.records
        if record.levelno >= logging.ERROR
    ), f"Expected ERROR log matching '{pattern}' not found"


def assert_warning_logged(caplog, pattern: str):
    """
    Helper to assert a WARNING log was captured.
    """
    assert any(
        pattern in record.message
        for record in caplog.records
        if record.levelno == logging.WARNING
    ), f"Expected WARNING log matching '{pattern}' not found"
