"""
Subscription profile storage with optimistic concurrency.

Every write bumps the ``version`` attribute and is conditioned on the version
the caller read, so concurrent read/modify/write cycles cannot lose updates.
A ``None`` value in a change set removes the attribute; the GSIs on the
Stripe refs cannot index NULL.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import (
    CHECKOUT_COOLDOWN_SECONDS,
    PENDING_CHANGE_TIMEOUT_SECONDS,
    PROFILE_SK,
    PROFILES_TABLE,
    THROTTLING_ERRORS,
)
from shared.errors import PersistenceError
from shared.models import SubscriptionProfile

logger = logging.getLogger(__name__)

PROFILE_FIELDS = frozenset(
    {
        "plan_id",
        "currency",
        "active",
        "cancel_at_period_end",
        "pending_plan_change",
        "target_plan_id",
        "pending_since",
        "subscription_status",
        "stripe_customer_id",
        "stripe_subscription_id",
        "current_period_end",
        "usage_count",
        "last_checkout_at",
    }
)


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def _raise_persistence(operation: str, subscriber_id: str, error: ClientError):
    code = error.response["Error"]["Code"]
    if code in THROTTLING_ERRORS:
        logger.warning(f"DynamoDB throttled {operation} for {subscriber_id}: {code}")
    else:
        logger.error(f"DynamoDB {operation} failed for {subscriber_id}: {error}")
    raise PersistenceError(f"Failed to {operation} profile") from error


class ProfileStore:
    def __init__(self, table=None):
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(PROFILES_TABLE)
        return self._table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_profile(self, subscriber_id: str) -> Optional[SubscriptionProfile]:
        try:
            response = self.table.get_item(
                Key={"pk": subscriber_id, "sk": PROFILE_SK},
                ConsistentRead=True,
            )
        except ClientError as e:
            _raise_persistence("read", subscriber_id, e)
        item = response.get("Item")
        return SubscriptionProfile.from_item(item) if item else None

    def _find_by_index(self, index_name: str, attribute: str, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            response = self.table.query(
                IndexName=index_name,
                KeyConditionExpression=Key(attribute).eq(value),
            )
        except ClientError as e:
            _raise_persistence("query", value, e)
        items = response.get("Items", [])
        if len(items) > 1:
            logger.warning(f"{len(items)} profiles share {attribute}={value}, using first")
        return items[0]["pk"] if items else None

    def find_by_subscription(self, subscription_id: Optional[str]) -> Optional[str]:
        return self._find_by_index("subscription-index", "stripe_subscription_id", subscription_id)

    def find_by_customer(self, customer_id: Optional[str]) -> Optional[str]:
        return self._find_by_index("customer-index", "stripe_customer_id", customer_id)

    def scan_expired_grace_periods(self, now: int) -> Iterator[SubscriptionProfile]:
        """Yield profiles scheduled to cancel whose paid period has ended."""
        scan_kwargs = {
            "FilterExpression": Attr("sk").eq(PROFILE_SK)
            & Attr("cancel_at_period_end").eq(True)
            & Attr("current_period_end").lte(now),
        }
        while True:
            response = self.table.scan(**scan_kwargs)
            for item in response.get("Items", []):
                yield SubscriptionProfile.from_item(item)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_changes(
        self,
        subscriber_id: str,
        changes: Dict[str, Any],
        expected_version: int,
        conditions: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply a change set if the stored version still matches.

        Args:
            subscriber_id: Profile key
            changes: Field -> new value; None removes the field
            expected_version: Version read before computing the changes
            conditions: Extra field -> required value preconditions

        Returns:
            True if written, False if the profile changed underneath us

        Raises:
            PersistenceError: any DynamoDB failure other than the condition
        """
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")

        names = {"#pk": "pk", "#version": "version", "#updated_at": "updated_at"}
        values: Dict[str, Any] = {
            ":expected": expected_version,
            ":next": expected_version + 1,
            ":now": datetime.now(timezone.utc).isoformat(),
        }
        set_parts = ["#version = :next", "#updated_at = :now"]
        remove_parts = []

        for i, (field_name, value) in enumerate(sorted(changes.items())):
            names[f"#f{i}"] = field_name
            if value is None:
                remove_parts.append(f"#f{i}")
            else:
                set_parts.append(f"#f{i} = :v{i}")
                values[f":v{i}"] = value

        if expected_version:
            version_check = "#version = :expected"
        else:
            version_check = "(attribute_not_exists(#version) OR #version = :expected)"
        condition_parts = ["attribute_exists(#pk)", version_check]

        for i, (field_name, value) in enumerate(sorted((conditions or {}).items())):
            names[f"#c{i}"] = field_name
            values[f":c{i}"] = value
            condition_parts.append(f"#c{i} = :c{i}")

        update_expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            update_expression += " REMOVE " + ", ".join(remove_parts)

        try:
            self.table.update_item(
                Key={"pk": subscriber_id, "sk": PROFILE_SK},
                UpdateExpression=update_expression,
                ConditionExpression=" AND ".join(condition_parts),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"Version conflict updating {subscriber_id} (expected v{expected_version})")
                return False
            _raise_persistence("update", subscriber_id, e)

        logger.info(
            f"Updated profile {subscriber_id} to v{expected_version + 1}",
            extra={"subscriber_id": subscriber_id, "fields": sorted(changes)},
        )
        return True

    def claim_pending_change(
        self,
        subscriber_id: str,
        target_plan_id: str,
        now: int,
        cooldown_seconds: int = CHECKOUT_COOLDOWN_SECONDS,
        pending_timeout_seconds: int = PENDING_CHANGE_TIMEOUT_SECONDS,
    ) -> bool:
        """
        Mark a plan change as pending and stamp the checkout time in one write.

        The condition enforces both the checkout cooldown and single flight
        (a non-stale pending change blocks). Creates the profile when the
        subscriber has none yet.

        Returns:
            True if claimed, False if the cooldown or an outstanding change blocks it
        """
        try:
            self.table.update_item(
                Key={"pk": subscriber_id, "sk": PROFILE_SK},
                UpdateExpression=(
                    "SET #pending = :true, #target = :target, "
                    "#since = :now, #last = :now, #updated_at = :now_iso, "
                    "#version = if_not_exists(#version, :zero) + :one, "
                    "#usage = if_not_exists(#usage, :zero), "
                    "#active = if_not_exists(#active, :false), "
                    "#cancel = if_not_exists(#cancel, :false)"
                ),
                ConditionExpression=(
                    "(attribute_not_exists(#last) OR #last <= :cooldown_edge) AND "
                    "(attribute_not_exists(#pending) OR #pending = :false "
                    "OR attribute_not_exists(#since) OR #since <= :stale_edge)"
                ),
                ExpressionAttributeNames={
                    "#pending": "pending_plan_change",
                    "#target": "target_plan_id",
                    "#since": "pending_since",
                    "#last": "last_checkout_at",
                    "#updated_at": "updated_at",
                    "#version": "version",
                    "#usage": "usage_count",
                    "#active": "active",
                    "#cancel": "cancel_at_period_end",
                },
                ExpressionAttributeValues={
                    ":true": True,
                    ":false": False,
                    ":zero": 0,
                    ":one": 1,
                    ":target": target_plan_id,
                    ":now": now,
                    ":now_iso": datetime.now(timezone.utc).isoformat(),
                    ":cooldown_edge": now - cooldown_seconds,
                    ":stale_edge": now - pending_timeout_seconds,
                },
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            _raise_persistence("claim pending change on", subscriber_id, e)

        logger.info(f"Claimed pending plan change for {subscriber_id} -> {target_plan_id}")
        return True

    def release_pending_change(self, subscriber_id: str, target_plan_id: str) -> bool:
        """Clear a pending change we claimed, keeping ``last_checkout_at``.

        Returns False when the pending change is no longer ours.
        """
        try:
            self.table.update_item(
                Key={"pk": subscriber_id, "sk": PROFILE_SK},
                UpdateExpression=(
                    "SET #pending = :false, #updated_at = :now_iso, "
                    "#version = if_not_exists(#version, :zero) + :one "
                    "REMOVE #target, #since"
                ),
                ConditionExpression="#pending = :true AND #target = :target",
                ExpressionAttributeNames={
                    "#pending": "pending_plan_change",
                    "#target": "target_plan_id",
                    "#since": "pending_since",
                    "#updated_at": "updated_at",
                    "#version": "version",
                },
                ExpressionAttributeValues={
                    ":true": True,
                    ":false": False,
                    ":zero": 0,
                    ":one": 1,
                    ":target": target_plan_id,
                    ":now_iso": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"Pending change for {subscriber_id} already resolved, nothing to release")
                return False
            _raise_persistence("release pending change on", subscriber_id, e)

        logger.info(f"Released pending plan change for {subscriber_id}")
        return True
