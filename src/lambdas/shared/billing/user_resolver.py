"""Ordered resolution of the user a billing object belongs to.

Order:
    1. metadata on the subscription/invoice (set at checkout)
    2. billing customer id -> user id lookup in the canonical store
    3. unresolved

Callers get a tagged result so they (and tests) can see which tier answered.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from src.lambdas.shared.canonical_store import CanonicalStore
from src.lambdas.shared.logging_utils import sanitize_for_log

logger = logging.getLogger(__name__)

# Checked in order; older checkouts wrote camelCase or the auth-provider uid
METADATA_USER_KEYS = ("user_id", "userId", "firebaseUID")


class UserSource(str, Enum):
    METADATA = "metadata"
    CUSTOMER_LOOKUP = "customer_lookup"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class UserResolution:
    user_id: str | None
    source: UserSource

    @property
    def resolved(self) -> bool:
        return self.user_id is not None


def user_id_from_metadata(metadata: Mapping[str, str] | None) -> str | None:
    if not metadata:
        return None
    for key in METADATA_USER_KEYS:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def resolve_user_id(
    metadata: Mapping[str, str] | None,
    customer_id: str | None,
    store: CanonicalStore,
) -> UserResolution:
    """Resolve the owning user for a billing object.

    Raises:
        CanonicalStoreError: The customer lookup itself failed (retryable;
            distinct from "looked up and found nothing")
    """
    user_id = user_id_from_metadata(metadata)
    if user_id:
        return UserResolution(user_id, UserSource.METADATA)

    if customer_id:
        user_id = store.find_user_by_customer_id(customer_id)
        if user_id:
            return UserResolution(user_id, UserSource.CUSTOMER_LOOKUP)

    logger.warning(
        "billing_user_unresolved",
        extra={"customer_id": sanitize_for_log(customer_id)},
    )
    return UserResolution(None, UserSource.UNRESOLVED)
