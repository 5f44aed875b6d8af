"""
Stripe client wrapper.

Holds its own API key and passes it per call instead of mutating the global
``stripe.api_key``. Every call is timed and logged; Stripe errors surface as
``ExternalServiceError``. Returned objects are converted to plain dicts.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import stripe

from shared.constants import STRIPE_TIMEOUT_SECONDS
from shared.errors import ExternalServiceError
from shared.logging_utils import log_external_call
from shared.stripe_payloads import extract_price_id

logger = logging.getLogger(__name__)


def configure_stripe(timeout: float = STRIPE_TIMEOUT_SECONDS) -> None:
    """Configure the Stripe SDK for use inside a request handler."""
    # Retries are the webhook sender's job, not ours
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class PaymentProcessor:
    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self.api_key = api_key

    def _call(self, operation: str, fn, *args, **kwargs):
        start = time.monotonic()
        try:
            result = fn(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            log_external_call(
                logger, "stripe", operation, False, (time.monotonic() - start) * 1000, error=str(e)
            )
            raise ExternalServiceError(f"Stripe {operation} failed") from e
        log_external_call(logger, "stripe", operation, True, (time.monotonic() - start) * 1000)
        return result

    def retrieve_checkout_price_id(self, session_id: str) -> Optional[str]:
        """Price id of the first line item of a checkout session."""
        session = self._call(
            "checkout.Session.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["line_items"],
        )
        return extract_price_id(_as_dict(session))

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _as_dict(self._call("Subscription.retrieve", stripe.Subscription.retrieve, subscription_id))

    def change_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Swap the subscription's item to a new price, prorating the difference."""
        subscription = self._call(
            "Subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
            billing_cycle_anchor="unchanged",
            metadata=metadata,
        )
        return _as_dict(subscription)

    def create_checkout_session(self, **params) -> Dict[str, Any]:
        session = self._call("checkout.Session.create", stripe.checkout.Session.create, **params)
        return _as_dict(session)

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        session = self._call(
            "billing_portal.Session.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _as_dict(session)
