"""
Tests for the webhook idempotency ledger.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from shared.errors import PersistenceError
from shared.event_ledger import DUPLICATE, NEW, EventLedger


@pytest.fixture
def ledger(mock_dynamodb):
    return EventLedger(mock_dynamodb.Table("subsync-billing-events"))


class TestRecordIfNew:
    def test_first_delivery_is_new(self, ledger):
        assert ledger.record_if_new("evt_1", "invoice.payment_failed", {"id": "evt_1"}) == NEW

        item = ledger.get_event("evt_1")
        assert item["event_type"] == "invoice.payment_failed"
        assert item["status"] == "processing"
        assert item["payload"] == '{"id": "evt_1"}'
        assert "ttl" in item

    def test_redelivery_is_duplicate(self, ledger):
        ledger.record_if_new("evt_1", "invoice.payment_failed", "{}")
        assert ledger.record_if_new("evt_1", "invoice.payment_failed", "{}") == DUPLICATE

    def test_write_failure_raises(self):
        table = MagicMock()
        table.put_item.side_effect = ClientError(
            {"Error": {"Code": "InternalServerError", "Message": "boom"}}, "PutItem"
        )

        with pytest.raises(PersistenceError):
            EventLedger(table).record_if_new("evt_1", "invoice.payment_failed", "{}")


class TestMarkOutcome:
    def test_records_status_and_subscriber(self, ledger):
        ledger.record_if_new("evt_1", "customer.subscription.updated", "{}")

        ledger.mark_outcome("evt_1", "processed", subscriber_id="u1")

        item = ledger.get_event("evt_1")
        assert item["status"] == "processed"
        assert item["subscriber_id"] == "u1"

    def test_records_error(self, ledger):
        ledger.record_if_new("evt_1", "customer.subscription.updated", "{}")

        ledger.mark_outcome("evt_1", "failed", error="boom")

        assert ledger.get_event("evt_1")["error"] == "boom"

    def test_failures_are_swallowed(self):
        table = MagicMock()
        table.update_item.side_effect = ClientError(
            {"Error": {"Code": "InternalServerError", "Message": "boom"}}, "UpdateItem"
        )

        EventLedger(table).mark_outcome("evt_1", "processed")
