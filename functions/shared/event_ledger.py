"""
Idempotency ledger for Stripe webhook events.

Each event id is recorded once with a conditional put. The first writer owns
the event; every later delivery of the same id is a duplicate.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import BILLING_EVENT_TTL_DAYS, BILLING_EVENTS_TABLE
from shared.errors import PersistenceError

logger = logging.getLogger(__name__)

EVENT_SK = "EVENT"

NEW = "new"
DUPLICATE = "duplicate"


class EventLedger:
    def __init__(self, table=None):
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        return self._table

    def record_if_new(self, event_id: str, event_type: str, payload) -> str:
        """Atomically record an event if its id has not been seen.

        Returns:
            "new" when this call recorded the event, "duplicate" otherwise

        Raises:
            PersistenceError: the event could not be recorded
        """
        now = datetime.now(timezone.utc)
        if not isinstance(payload, str):
            payload = json.dumps(payload, default=str)

        try:
            self.table.put_item(
                Item={
                    "pk": event_id,
                    "sk": EVENT_SK,
                    "event_id": event_id,
                    "event_type": event_type,
                    "payload": payload,
                    "status": "processing",
                    "received_at": now.isoformat(),
                    "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
                },
                ConditionExpression="attribute_not_exists(pk)",
            )
            return NEW
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return DUPLICATE
            logger.error(f"Failed to record billing event {event_id}: {e}")
            raise PersistenceError("Failed to record billing event") from e

    def mark_outcome(
        self,
        event_id: str,
        status: str,
        subscriber_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record how an event was handled (best-effort)."""
        set_parts = ["#status = :status", "processed_at = :now"]
        values = {":status": status, ":now": datetime.now(timezone.utc).isoformat()}
        if subscriber_id:
            set_parts.append("subscriber_id = :sub")
            values[":sub"] = subscriber_id
        if error:
            set_parts.append("#error = :error")
            values[":error"] = error[:1000]

        names = {"#status": "status"}
        if error:
            names["#error"] = "error"

        try:
            self.table.update_item(
                Key={"pk": event_id, "sk": EVENT_SK},
                UpdateExpression="SET " + ", ".join(set_parts),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            logger.error(f"Failed to mark billing event {event_id} as {status}: {e}")

    def get_event(self, event_id: str) -> Optional[dict]:
        return self.table.get_item(Key={"pk": event_id, "sk": EVENT_SK}).get("Item")
