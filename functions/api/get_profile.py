"""
Profile Endpoint - GET /me

Returns the consolidated subscription view for the logged-in subscriber.
Requires session authentication.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from shared.errors import AuthenticationError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.models import Plan, SubscriptionProfile, SubscriptionState, derive_state
from shared.response_utils import billing_error_response, error_response, get_origin, success_response
from shared.services import BillingServices, get_services
from shared.session import Principal, authenticate

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _iso(epoch: Optional[int]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _fallback_view(principal: Principal) -> dict:
    return {
        "subscriber_id": principal.subscriber_id,
        "email": principal.email,
        "plan": None,
        "plan_id": None,
        "plan_limit": 0,
        "usage_count": 0,
        "remaining": 0,
        "active": False,
        "state": SubscriptionState.NO_SUBSCRIPTION.value,
        "cancel_at_period_end": False,
        "pending_plan_change": False,
        "target_plan_id": None,
        "subscription_status": None,
        "current_period_end": None,
        "stripe_customer_id": None,
        "profile_missing": True,
    }


def build_profile_view(
    principal: Principal,
    profile: Optional[SubscriptionProfile],
    plan: Optional[Plan],
    now: int,
) -> dict:
    if profile is None:
        return _fallback_view(principal)

    plan_limit = plan.limit_for(profile.currency) if plan else 0
    remaining = max(plan_limit - profile.usage_count, 0) if profile.active else 0

    return {
        "subscriber_id": profile.subscriber_id,
        "email": principal.email,
        "plan": plan.name if plan else None,
        "plan_id": profile.plan_id,
        "plan_limit": plan_limit,
        "usage_count": profile.usage_count,
        "remaining": remaining,
        "active": profile.active,
        "state": derive_state(profile, now).value,
        "cancel_at_period_end": profile.cancel_at_period_end,
        "pending_plan_change": profile.pending_plan_change,
        "target_plan_id": profile.target_plan_id,
        "subscription_status": profile.subscription_status,
        "current_period_end": _iso(profile.current_period_end),
        "stripe_customer_id": profile.stripe_customer_id,
        "profile_missing": False,
    }


def get_profile_view(principal: Principal, services: BillingServices, now: Optional[int] = None) -> dict:
    now = int(time.time()) if now is None else now
    profile = services.profiles.get_profile(principal.subscriber_id)
    if profile is None:
        logger.warning(f"Profile not found for {principal.subscriber_id}, returning fallback")
        return _fallback_view(principal)
    plan = services.plans.get_plan(profile.plan_id)
    return build_profile_view(principal, profile, plan, now)


def handler(event, context):
    """Lambda handler for GET /me."""
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        principal = authenticate(event)
    except AuthenticationError as e:
        return billing_error_response(e, origin)

    try:
        view = get_profile_view(principal, get_services())
    except Exception as e:
        logger.error(f"Error loading profile for {principal.subscriber_id}: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    return success_response(view, headers={"Cache-Control": "no-store"}, origin=origin)
