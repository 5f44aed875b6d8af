"""
Tests for webhook identity resolution.
"""

from conftest import list_alerts, put_profile
from shared.models import StripeEvent


def _event(obj: dict, event_type: str = "customer.subscription.updated") -> StripeEvent:
    return StripeEvent(event_id="evt_1", event_type=event_type, payload={"data": {"object": obj}})


class TestIdentityResolver:
    def test_metadata_subscriber_id_wins(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u1")
        put_profile(mock_dynamodb, "u2", stripe_subscription_id="sub_1")

        event = _event({"object": "subscription", "id": "sub_1", "metadata": {"subscriber_id": "u1"}})

        assert services.identity.resolve(event) == "u1"

    def test_legacy_user_id_metadata(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u1")
        assert services.identity.resolve(_event({"metadata": {"userId": "u1"}})) == "u1"

    def test_client_reference_id(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u1")
        event = _event({"object": "checkout.session", "client_reference_id": "u1"}, "checkout.session.completed")
        assert services.identity.resolve(event) == "u1"

    def test_invoice_subscription_metadata(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u1")
        event = _event(
            {"object": "invoice", "parent": {"subscription_details": {"metadata": {"subscriber_id": "u1"}}}},
            "invoice.payment_failed",
        )
        assert services.identity.resolve(event) == "u1"

    def test_unknown_metadata_subscriber_falls_through_to_subscription(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u2", stripe_subscription_id="sub_1")

        event = _event({"object": "subscription", "id": "sub_1", "metadata": {"subscriber_id": "ghost"}})

        assert services.identity.resolve(event) == "u2"

    def test_customer_fallback(self, mock_dynamodb, services):
        put_profile(mock_dynamodb, "u3", stripe_customer_id="cus_9")

        event = _event({"object": "invoice", "customer": "cus_9"}, "invoice.payment_succeeded")

        assert services.identity.resolve(event) == "u3"

    def test_unresolved_is_alerted(self, mock_dynamodb, services):
        event = _event({"object": "subscription", "id": "sub_x", "customer": "cus_x"})

        assert services.identity.resolve(event) is None

        [alert] = list_alerts(mock_dynamodb)
        assert alert["alert_type"] == "unresolved_subscriber"
        assert alert["severity"] == "warning"
        assert alert["metadata"]["subscription_id"] == "sub_x"
