"""
Identity resolution for webhook events.

Maps an incoming Stripe event to the subscriber it concerns, in order:
explicit subscriber id in the payload (only if that profile exists), then
the subscription ref, then the customer ref.
"""

import logging
from typing import Optional

from shared.alerts import WARNING, AlertSink
from shared.models import StripeEvent
from shared.profile_store import ProfileStore
from shared.stripe_payloads import (
    extract_customer_ref,
    extract_subscriber_hint,
    extract_subscription_ref,
)

logger = logging.getLogger(__name__)


class IdentityResolver:
    def __init__(self, profiles: ProfileStore, alerts: Optional[AlertSink] = None):
        self.profiles = profiles
        self.alerts = alerts

    def resolve(self, event: StripeEvent) -> Optional[str]:
        """Return the subscriber id for the event, or None (alerted)."""
        obj = event.data_object

        hint = extract_subscriber_hint(obj)
        if hint:
            if self.profiles.get_profile(hint) is not None:
                return hint
            logger.warning(f"Event {event.event_id} names subscriber {hint} with no profile")

        subscription_id = extract_subscription_ref(obj)
        subscriber_id = self.profiles.find_by_subscription(subscription_id)
        if subscriber_id:
            logger.info(f"Resolved {event.event_id} via subscription {subscription_id}")
            return subscriber_id

        customer_id = extract_customer_ref(obj)
        subscriber_id = self.profiles.find_by_customer(customer_id)
        if subscriber_id:
            logger.info(f"Resolved {event.event_id} via customer {customer_id}")
            return subscriber_id

        if self.alerts is not None:
            self.alerts.record(
                "unresolved_subscriber",
                WARNING,
                f"Could not resolve subscriber for {event.event_type}",
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "subscriber_hint": hint,
                    "subscription_id": subscription_id,
                    "customer_id": customer_id,
                },
            )
        return None
