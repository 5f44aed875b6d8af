"""
Create Checkout Endpoint - POST /checkout

Starts a plan purchase or plan change for the logged-in subscriber.
Form-encoded body: ``plan`` (plan name) and ``currency`` (PLN or USD).

- Subscribers with an active subscription get the subscription's price
  swapped in place with proration; the webhook confirms the change later.
- Everyone else is redirected to a hosted Stripe Checkout session.

Either way the profile is marked as having a pending plan change until the
matching webhook arrives. Access, plan and usage are never touched here.
"""

import base64
import binascii
import logging
import time
from typing import Dict, Optional
from urllib.parse import parse_qs

from shared.billing_utils import get_stripe_api_key
from shared.constants import (
    ACCESS_GRANTING_STATUSES,
    APP_URL,
    CHECKOUT_COOLDOWN_SECONDS,
    CHECKOUT_SESSION_TTL_SECONDS,
    PENDING_CHANGE_TIMEOUT_SECONDS,
    SUPPORTED_CURRENCIES,
)
from shared.errors import (
    BillingError,
    ConflictError,
    RateLimitError,
    ValidationError,
)
from shared.logging_utils import configure_structured_logging, mask_email, set_request_id
from shared.metrics import emit_checkout_metric
from shared.models import Plan, SubscriptionProfile
from shared.response_utils import (
    billing_error_response,
    error_response,
    get_origin,
    redirect_response,
)
from shared.services import BillingServices, get_services
from shared.session import Principal, authenticate, get_cookie

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

CHECKOUT_LOCALES = {"pl", "en"}


def _parse_form(event: dict) -> Dict[str, str]:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            body = base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValidationError("Request body must be form-encoded", code="invalid_body") from e
    return {key: values[0].strip() for key, values in parse_qs(body).items() if values}


def _validate_request(form: Dict[str, str], services: BillingServices):
    plan_name = form.get("plan")
    currency = (form.get("currency") or "").upper()

    if not plan_name or not currency:
        raise ValidationError("Both plan and currency are required", code="missing_parameters")
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationError(
            f"Unsupported currency. Choose: {', '.join(SUPPORTED_CURRENCIES)}",
            code="invalid_currency",
        )

    plan = services.plans.find_by_name(plan_name)
    if plan is None:
        raise ValidationError("Plan not found", code="plan_not_found")

    price_id = plan.price_for(currency)
    if not price_id:
        raise ValidationError(
            f"Plan {plan.name} is not available in {currency}",
            code="plan_unavailable",
        )
    return plan, currency, price_id


def _retry_after(profile: Optional[SubscriptionProfile], now: int) -> int:
    """Seconds left in the checkout cooldown, 0 when checkout is allowed."""
    if profile is None or profile.last_checkout_at is None:
        return 0
    return max(CHECKOUT_COOLDOWN_SECONDS - (now - profile.last_checkout_at), 0)


def _check_preconditions(profile: Optional[SubscriptionProfile], plan: Plan, now: int) -> None:
    retry_after = _retry_after(profile, now)
    if retry_after:
        raise RateLimitError(retry_after)

    if profile is None:
        return

    if profile.has_blocking_pending_change(now, PENDING_CHANGE_TIMEOUT_SECONDS):
        raise ConflictError()

    if profile.active and profile.plan_id == plan.plan_id:
        raise ValidationError("You are already on this plan", code="same_plan")


def _claim(principal: Principal, plan: Plan, services: BillingServices, now: int) -> None:
    claimed = services.profiles.claim_pending_change(
        principal.subscriber_id,
        plan.plan_id,
        now,
        cooldown_seconds=CHECKOUT_COOLDOWN_SECONDS,
        pending_timeout_seconds=PENDING_CHANGE_TIMEOUT_SECONDS,
    )
    if claimed:
        return

    # Lost a race with another request; report what blocked us
    profile = services.profiles.get_profile(principal.subscriber_id)
    retry_after = _retry_after(profile, now)
    if retry_after:
        raise RateLimitError(retry_after)
    raise ConflictError()


def _change_in_place(
    principal: Principal,
    profile: SubscriptionProfile,
    plan: Plan,
    currency: str,
    price_id: str,
    services: BillingServices,
) -> str:
    subscription = services.processor.retrieve_subscription(profile.stripe_subscription_id)
    if subscription.get("status") not in ACCESS_GRANTING_STATUSES:
        raise ValidationError(
            "Your subscription is not active. Please update your payment method first.",
            code="subscription_not_active",
        )

    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        raise ValidationError("Subscription has no items to change", code="subscription_not_changeable")

    services.processor.change_subscription_price(
        profile.stripe_subscription_id,
        items[0]["id"],
        price_id,
        metadata={
            "subscriber_id": principal.subscriber_id,
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "currency": currency,
            "previous_plan_id": profile.plan_id or "",
        },
    )
    logger.info(
        f"Changed subscription {profile.stripe_subscription_id} of {principal.subscriber_id} "
        f"from {profile.plan_id} to {plan.plan_id}"
    )
    emit_checkout_metric("in_place")
    return f"{APP_URL}/dashboard?plan_change=pending"


def _start_hosted_checkout(
    principal: Principal,
    profile: Optional[SubscriptionProfile],
    plan: Plan,
    currency: str,
    price_id: str,
    locale: str,
    services: BillingServices,
    now: int,
) -> str:
    metadata = {
        "subscriber_id": principal.subscriber_id,
        "plan_id": plan.plan_id,
        "plan_name": plan.name,
        "currency": currency,
    }
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": f"{APP_URL}/dashboard?checkout=success",
        "cancel_url": f"{APP_URL}/pricing?checkout=cancelled",
        "client_reference_id": principal.subscriber_id,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
        "expires_at": now + CHECKOUT_SESSION_TTL_SECONDS,
        "locale": locale,
    }

    if profile is not None and profile.stripe_customer_id:
        params["customer"] = profile.stripe_customer_id
    elif principal.email:
        params["customer_email"] = principal.email

    session = services.processor.create_checkout_session(**params)
    logger.info(
        f"Created checkout session for {principal.subscriber_id} "
        f"({mask_email(principal.email)}), plan {plan.plan_id} {currency}"
    )
    emit_checkout_metric("hosted_checkout")
    return session["url"]


def initiate_checkout(
    principal: Principal,
    form: Dict[str, str],
    locale: str,
    services: BillingServices,
    now: Optional[int] = None,
) -> str:
    """
    Validate, claim the pending change and start the Stripe flow.

    Returns:
        URL to redirect the browser to
    """
    now = int(time.time()) if now is None else now

    plan, currency, price_id = _validate_request(form, services)
    profile = services.profiles.get_profile(principal.subscriber_id)
    _check_preconditions(profile, plan, now)
    _claim(principal, plan, services, now)

    try:
        if profile is not None and profile.stripe_subscription_id and profile.active:
            return _change_in_place(principal, profile, plan, currency, price_id, services)
        return _start_hosted_checkout(principal, profile, plan, currency, price_id, locale, services, now)
    except Exception:
        services.profiles.release_pending_change(principal.subscriber_id, plan.plan_id)
        raise


def handler(event, context):
    """
    Lambda handler for POST /checkout.

    Returns a 303 redirect on success, JSON error otherwise.
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        principal = authenticate(event)

        stripe_api_key = get_stripe_api_key()
        if not stripe_api_key:
            logger.error("Stripe API key not configured")
            return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

        locale = (get_cookie(event, "locale") or "").lower()
        location = initiate_checkout(
            principal,
            _parse_form(event),
            locale if locale in CHECKOUT_LOCALES else "auto",
            get_services(stripe_api_key),
        )
        return redirect_response(location)

    except BillingError as e:
        if e.status_code >= 500:
            logger.error(f"Checkout failed: {e.code}: {e.message}")
        else:
            logger.info(f"Checkout rejected: {e.code}")
        return billing_error_response(e, origin)
    except Exception as e:
        logger.error(f"Error creating checkout: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred", origin=origin)
