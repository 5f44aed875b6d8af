"""
Create Billing Portal Session Endpoint - POST /billing-portal

Redirects the logged-in subscriber to a Stripe Billing Portal session for
managing payment methods, invoices and cancellation.
"""

import logging

from shared.billing_utils import get_stripe_api_key
from shared.constants import APP_URL
from shared.errors import BillingError, ValidationError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import billing_error_response, error_response, get_origin, redirect_response
from shared.services import BillingServices, get_services
from shared.session import Principal, authenticate

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def create_portal_url(principal: Principal, services: BillingServices) -> str:
    profile = services.profiles.get_profile(principal.subscriber_id)
    if profile is None or not profile.stripe_customer_id:
        raise ValidationError("No billing account found. Please subscribe first.", code="no_billing_account")

    session = services.processor.create_portal_session(
        profile.stripe_customer_id,
        return_url=f"{APP_URL}/dashboard",
    )
    logger.info(f"Created billing portal session for {principal.subscriber_id}")
    return session["url"]


def handler(event, context):
    """Lambda handler for POST /billing-portal."""
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        principal = authenticate(event)

        stripe_api_key = get_stripe_api_key()
        if not stripe_api_key:
            logger.error("Stripe API key not configured")
            return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

        return redirect_response(create_portal_url(principal, get_services(stripe_api_key)))

    except BillingError as e:
        return billing_error_response(e, origin)
    except Exception as e:
        logger.error(f"Error creating billing portal session: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred", origin=origin)
