"""
Canonical Store
===============

The single authoritative document store for entitlement state.

For On-Call Engineers:
    Item layout (single table):
    - PK=USER#{user_id}, SK=SUBSCRIPTION     canonical SubscriptionRecord
    - PK=USER#{user_id}, SK=WEBHOOK_HEALTH   last health check + fallback flag
    - GSI by_customer_id (customer_id)       billing customer -> user lookup

    If webhooks fail with UNRESOLVED_USER for existing users, check the
    by_customer_id GSI exists and the record has customer_id populated.

For Developers:
    - Writes to SUBSCRIPTION items go through CanonicalUpdater only
    - merge() is a field-level UpdateItem, never a whole-item PutItem
    - subscribe() polls from a daemon thread; callbacks run on that thread
"""

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from src.lambdas.shared.dynamodb import (
    build_key,
    build_update_expression,
    build_write_condition,
    get_table,
    is_conditional_check_failure,
    parse_dynamodb_item,
)
from src.lambdas.shared.errors.billing_errors import CanonicalStoreError, ConflictError
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.health import HEALTH_SK
from src.lambdas.shared.models.subscription import SUBSCRIPTION_SK, SubscriptionRecord
from src.lambdas.shared.retry import dynamodb_retry

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_INDEX = "by_customer_id"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0

ChangeCallback = Callable[[SubscriptionRecord | None], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class CanonicalStore(Protocol):
    """Operations every canonical store backend provides."""

    def get(self, user_id: str) -> SubscriptionRecord | None: ...

    def merge(
        self,
        user_id: str,
        fields: dict[str, Any],
        remove: tuple[str, ...] = (),
        expected_updated_at: int | None = None,
        create_only: bool = False,
    ) -> None: ...

    def subscribe(
        self,
        user_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe: ...

    def find_user_by_customer_id(self, customer_id: str) -> str | None: ...

    def get_health(self, user_id: str) -> dict[str, Any] | None: ...

    def put_health(self, user_id: str, fields: dict[str, Any]) -> None: ...


class DynamoDBCanonicalStore:
    """CanonicalStore backed by a single DynamoDB table."""

    def __init__(
        self,
        table: Any | None = None,
        table_name: str | None = None,
        customer_index: str = DEFAULT_CUSTOMER_INDEX,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self._table = table if table is not None else get_table(table_name)
        self._customer_index = customer_index
        self._poll_interval = poll_interval

    def get(self, user_id: str) -> SubscriptionRecord | None:
        try:
            item = self._get_item(user_id, SUBSCRIPTION_SK)
        except ClientError as e:
            logger.error(
                "canonical_store_read_failed",
                extra={"user_id": sanitize_for_log(user_id), **get_safe_error_info(e)},
            )
            raise CanonicalStoreError(f"Failed to read record for {user_id}") from e

        if item is None:
            return None
        return SubscriptionRecord.from_dynamodb_item(item)

    def merge(
        self,
        user_id: str,
        fields: dict[str, Any],
        remove: tuple[str, ...] = (),
        expected_updated_at: int | None = None,
        create_only: bool = False,
    ) -> None:
        """Field-level merge into the SUBSCRIPTION item.

        Args:
            fields: Attributes to SET
            remove: Attributes to REMOVE
            expected_updated_at: Only write if the stored updated_at matches
            create_only: Only write if the item does not exist yet

        Raises:
            ConflictError: The write condition failed (concurrent writer)
            CanonicalStoreError: Any other DynamoDB failure
        """
        set_fields = {
            "entity_type": "subscription",
            "user_id": user_id,
            **fields,
        }
        expression, names, values = build_update_expression(set_fields, remove)

        kwargs: dict[str, Any] = {
            "Key": build_key(user_id, SUBSCRIPTION_SK),
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
        }
        condition = build_write_condition(names, values, expected_updated_at, create_only)
        if condition:
            kwargs["ConditionExpression"] = condition
        if values:
            kwargs["ExpressionAttributeValues"] = values

        try:
            self._update_item(**kwargs)
        except ClientError as e:
            if is_conditional_check_failure(e):
                raise ConflictError(user_id) from e
            code = e.response.get("Error", {}).get("Code", "")
            logger.error(
                "canonical_store_write_failed",
                extra={"user_id": sanitize_for_log(user_id), "error_code": code},
            )
            raise CanonicalStoreError(f"Failed to write record for {user_id}") from e

    def find_user_by_customer_id(self, customer_id: str) -> str | None:
        """Cross-reference a billing customer id to a user id via the GSI."""
        try:
            response = self._table.query(
                IndexName=self._customer_index,
                KeyConditionExpression=Key("customer_id").eq(customer_id),
                Limit=5,
            )
        except ClientError as e:
            logger.error(
                "customer_lookup_failed",
                extra={
                    "customer_id": sanitize_for_log(customer_id),
                    **get_safe_error_info(e),
                },
            )
            raise CanonicalStoreError("Customer lookup failed") from e

        for item in response.get("Items", []):
            if item.get("SK") == SUBSCRIPTION_SK and item.get("user_id"):
                return item["user_id"]
        return None

    def get_health(self, user_id: str) -> dict[str, Any] | None:
        try:
            return self._get_item(user_id, HEALTH_SK)
        except ClientError as e:
            raise CanonicalStoreError("Failed to read health status") from e

    def put_health(self, user_id: str, fields: dict[str, Any]) -> None:
        expression, names, values = build_update_expression(
            {"entity_type": "webhook_health", "user_id": user_id, **fields}
        )
        try:
            self._update_item(
                Key=build_key(user_id, HEALTH_SK),
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            raise CanonicalStoreError("Failed to write health status") from e

    def subscribe(
        self,
        user_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        """Push changes for one user's record to on_change.

        The current value is delivered first. After that, on_change fires
        whenever updated_at (or existence) changes. Read failures go to
        on_error and polling continues.

        Returns:
            Callable that stops the subscription
        """
        watcher = _RecordWatcher(self, user_id, on_change, on_error, self._poll_interval)
        watcher.start()
        return watcher.stop

    @dynamodb_retry
    def _get_item(self, user_id: str, section: str) -> dict[str, Any] | None:
        response = self._table.get_item(Key=build_key(user_id, section))
        item = response.get("Item")
        return parse_dynamodb_item(item) if item else None

    @dynamodb_retry
    def _update_item(self, **kwargs: Any) -> None:
        self._table.update_item(**kwargs)


class _RecordWatcher:
    """Daemon thread that polls one record and reports changes."""

    def __init__(
        self,
        store: DynamoDBCanonicalStore,
        user_id: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
        poll_interval: float,
    ):
        self._store = store
        self._user_id = user_id
        self._on_change = on_change
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"canonical-watch-{user_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self._poll_interval + 1)

    def _run(self) -> None:
        first = True
        last_version: int | None = None
        while not self._stop_event.is_set():
            try:
                record = self._store.get(self._user_id)
            except CanonicalStoreError as e:
                logger.warning(
                    "canonical_watch_error",
                    extra={"user_id": sanitize_for_log(self._user_id)},
                )
                self._on_error(e)
            else:
                version = record.updated_at if record is not None else None
                if first or version != last_version:
                    first = False
                    last_version = version
                    self._on_change(record)
            self._stop_event.wait(self._poll_interval)
