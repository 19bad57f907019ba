"""
DynamoDB Helper Module
======================

Table access and expression builders for the entitlement table.

For On-Call Engineers:
    - Throttling shows up as `ProvisionedThroughputExceededException`; the
      table is on-demand, so sustained throttling means a hot user partition.
    - ConditionalCheckFailedException on SUBSCRIPTION items is normal under
      concurrent webhooks; CanonicalUpdater re-reads and retries.

For Developers:
    - Every attribute name goes through ExpressionAttributeNames (`status`
      is a reserved word). Never build expressions by string concatenation.
    - Item layout: PK=USER#{user_id}, SK=<section>.
"""

import logging
import os
from decimal import Decimal
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# boto3-level retries; dynamodb_retry in retry.py adds backoff on top
RETRY_CONFIG = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    connect_timeout=5,
    read_timeout=10,
)

USER_PK_PREFIX = "USER#"
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def get_dynamodb_resource(region_name: str | None = None) -> Any:
    region = (
        region_name
        or os.environ.get("AWS_DEFAULT_REGION")
        or os.environ.get("AWS_REGION")
    )
    if not region:
        raise ValueError(
            "AWS_DEFAULT_REGION or AWS_REGION environment variable must be set"
        )
    return boto3.resource("dynamodb", region_name=region, config=RETRY_CONFIG)


def get_table(table_name: str | None = None, region_name: str | None = None) -> Any:
    """
    Resolve the entitlement table.

    DATABASE_TABLE wins over DYNAMODB_TABLE so preprod can point a shared
    deployment at its own table.

    On-Call Note:
        aws dynamodb describe-table --table-name <name>
        must show the by_customer_id GSI as ACTIVE.
    """
    name = (
        table_name
        or os.environ.get("DATABASE_TABLE")
        or os.environ.get("DYNAMODB_TABLE")
    )
    if not name:
        raise ValueError(
            "Table name required: set DYNAMODB_TABLE env var or pass table_name"
        )
    return get_dynamodb_resource(region_name).Table(name)


def build_key(user_id: str, section: str) -> dict[str, str]:
    """
    Example:
        >>> build_key("user_123", "SUBSCRIPTION")
        {'PK': 'USER#user_123', 'SK': 'SUBSCRIPTION'}
    """
    return {"PK": f"{USER_PK_PREFIX}{user_id}", "SK": section}


def build_update_expression(
    set_fields: dict[str, Any],
    remove_fields: list[str] | tuple[str, ...] = (),
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """
    Build a parameterized UpdateExpression.

    Placeholders are positional over the sorted field names (#s0, :s0 for
    SET; #r0 for REMOVE) so the same change always yields the same
    expression.

    Returns:
        (update_expression, expression_attribute_names, expression_attribute_values)
    """
    names: dict[str, str] = {}
    values: dict[str, Any] = {}

    set_parts = []
    for index, (attr, value) in enumerate(sorted(set_fields.items())):
        names[f"#s{index}"] = attr
        values[f":s{index}"] = value
        set_parts.append(f"#s{index} = :s{index}")

    remove_parts = []
    for index, attr in enumerate(sorted(remove_fields)):
        names[f"#r{index}"] = attr
        remove_parts.append(f"#r{index}")

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))
    return " ".join(clauses), names, values


def build_write_condition(
    names: dict[str, str],
    values: dict[str, Any],
    expected_updated_at: int | None = None,
    create_only: bool = False,
) -> str | None:
    """
    Optimistic-concurrency condition for a SUBSCRIPTION write.

    Adds its placeholders to names/values in place.

    Returns:
        ConditionExpression, or None for an unconditional write
    """
    if create_only:
        return "attribute_not_exists(PK)"
    if expected_updated_at is None:
        return None
    names["#expected_updated_at"] = "updated_at"
    values[":expected_updated_at"] = expected_updated_at
    return "#expected_updated_at = :expected_updated_at"


def is_conditional_check_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


def parse_dynamodb_item(item: dict[str, Any] | None) -> dict[str, Any]:
    """
    Convert a boto3 item into plain Python values.

    Epoch-millisecond timestamps come back as Decimal and must become int
    before pydantic validation; fractional values become float.
    """
    if not item:
        return {}
    return {key: _convert_value(value) for key, value in item.items()}


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value % 1 == 0 else float(value)
    if isinstance(value, set):
        return list(value)
    if isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert_value(v) for v in value]
    return value
