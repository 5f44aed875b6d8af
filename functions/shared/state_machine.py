"""
Subscription state machine.

``compute_transition`` is pure: given the current profile, the facts of one
event and the clock, it returns the field changes and alerts that event
implies. All I/O happens in the reconciliation pipeline around it.
"""

import logging
from typing import Any, Callable, Dict, Optional

from shared.constants import ACCESS_GRANTING_STATUSES, KNOWN_SUBSCRIPTION_STATUSES
from shared.models import (
    Alert,
    EventFacts,
    EventKind,
    Plan,
    SubscriptionProfile,
    Transition,
)

logger = logging.getLogger(__name__)

# Events that name a subscription and must match the profile's current one
_SUBSCRIPTION_SCOPED = frozenset(
    {
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
        EventKind.INVOICE_PAID,
        EventKind.INVOICE_PAYMENT_FAILED,
    }
)

CLEAR_PENDING: Dict[str, Any] = {
    "pending_plan_change": False,
    "target_plan_id": None,
    "pending_since": None,
}


def _alert_metadata(profile: SubscriptionProfile, facts: EventFacts, **extra) -> Dict[str, Any]:
    metadata = {
        "subscriber_id": profile.subscriber_id,
        "event_id": facts.event_id,
        "event_type": facts.event_type,
        "subscription_id": facts.subscription_id,
        "customer_id": facts.customer_id,
    }
    metadata.update(extra)
    return metadata


def _refs(facts: EventFacts) -> Dict[str, Any]:
    refs = {}
    if facts.customer_id:
        refs["stripe_customer_id"] = facts.customer_id
    if facts.subscription_id:
        refs["stripe_subscription_id"] = facts.subscription_id
    return refs


def _missing_price_alert(profile: SubscriptionProfile, facts: EventFacts) -> Alert:
    return Alert(
        alert_type="missing_price_id",
        severity="critical",
        message=f"Could not map price {facts.price_id or '(none)'} to a plan for {profile.subscriber_id}",
        metadata=_alert_metadata(profile, facts, price_id=facts.price_id),
    )


def _immediate_end(status: Optional[str]) -> Dict[str, Any]:
    changes = {
        "plan_id": None,
        "active": False,
        "usage_count": 0,
        "cancel_at_period_end": False,
        **CLEAR_PENDING,
    }
    if status:
        changes["subscription_status"] = status
    return changes


# ----------------------------------------------------------------------
# Per-kind transitions
# ----------------------------------------------------------------------


def _checkout_completed(profile, facts, previous_plan, now) -> Transition:
    changes = {**_refs(facts), **CLEAR_PENDING}
    if facts.plan is None:
        changes["active"] = False
        return Transition(
            outcome="unresolved_price",
            changes=changes,
            alerts=[_missing_price_alert(profile, facts)],
        )

    changes.update(
        {
            "plan_id": facts.plan.plan_id,
            "currency": facts.resolved_price.currency,
            "active": True,
            "cancel_at_period_end": False,
        }
    )
    return Transition(outcome="activated", changes=changes)


def _checkout_expired(profile, facts, previous_plan, now) -> Transition:
    if not profile.pending_plan_change:
        return Transition(outcome="no_pending_change")
    if facts.metadata_plan_id and facts.metadata_plan_id != profile.target_plan_id:
        return Transition(outcome="pending_change_superseded")
    return Transition(outcome="pending_change_cleared", changes=dict(CLEAR_PENDING))


def _subscription_created(profile, facts, previous_plan, now) -> Transition:
    if facts.plan is None:
        return Transition(outcome="unresolved_price", alerts=[_missing_price_alert(profile, facts)])

    changes = {
        **_refs(facts),
        **CLEAR_PENDING,
        "plan_id": facts.plan.plan_id,
        "currency": facts.resolved_price.currency,
        "active": facts.status in ACCESS_GRANTING_STATUSES,
    }
    if facts.status:
        changes["subscription_status"] = facts.status
    if facts.period_end is not None:
        changes["current_period_end"] = facts.period_end
    if facts.cancel_at_period_end is not None:
        changes["cancel_at_period_end"] = facts.cancel_at_period_end
    return Transition(outcome="subscription_created", changes=changes)


def _subscription_updated(profile, facts, previous_plan: Optional[Plan], now) -> Transition:
    changes: Dict[str, Any] = {"active": facts.status in ACCESS_GRANTING_STATUSES}
    if facts.status:
        changes["subscription_status"] = facts.status
    if facts.period_end is not None:
        changes["current_period_end"] = facts.period_end

    if facts.plan is None:
        logger.warning(
            f"Unresolved price {facts.price_id} on subscription update for {profile.subscriber_id}, "
            "updating status only"
        )
        if not profile.plan_id:
            # Status alone never grants access without a plan
            changes["active"] = False
        return Transition(outcome="status_updated", changes=changes)

    currency = facts.resolved_price.currency
    new_limit = facts.plan.limit_for(currency)
    outcome = "plan_updated"
    if previous_plan is not None and previous_plan.plan_id != facts.plan.plan_id:
        old_limit = previous_plan.limit_for(currency)
        if new_limit < old_limit:
            outcome = "downgraded"
            changes["usage_count"] = 0
        else:
            outcome = "upgraded"
    elif previous_plan is None and profile.plan_id != facts.plan.plan_id:
        outcome = "upgraded"

    changes.update(
        {
            **CLEAR_PENDING,
            "plan_id": facts.plan.plan_id,
            "currency": currency,
        }
    )
    if facts.cancel_at_period_end is not None:
        changes["cancel_at_period_end"] = facts.cancel_at_period_end
    return Transition(outcome=outcome, changes=changes)


def _subscription_deleted(profile, facts, previous_plan, now) -> Transition:
    period_end = facts.period_end
    if period_end is not None and period_end > now:
        changes = {"cancel_at_period_end": True, "current_period_end": period_end}
        if facts.status:
            changes["subscription_status"] = facts.status
        return Transition(outcome="grace_period_started", changes=changes)

    return Transition(outcome="subscription_ended", changes=_immediate_end(facts.status or "canceled"))


def _non_subscription_invoice(profile, facts) -> Transition:
    # One-off invoices say nothing about the subscription
    logger.info(f"Non-subscription invoice {facts.event_id} for {profile.subscriber_id}, skipping")
    return Transition(outcome="non_subscription_invoice")


def _invoice_paid(profile, facts, previous_plan, now) -> Transition:
    if not facts.subscription_id:
        return _non_subscription_invoice(profile, facts)

    changes: Dict[str, Any] = {"active": True, "subscription_status": "active"}
    period_end = facts.period_end
    opens_new_period = (
        period_end is None
        or profile.current_period_end is None
        or period_end > profile.current_period_end
    )
    if period_end is not None:
        changes["current_period_end"] = period_end
    if opens_new_period:
        changes["usage_count"] = 0
    return Transition(outcome="renewed" if opens_new_period else "payment_recorded", changes=changes)


def _invoice_payment_failed(profile, facts, previous_plan, now) -> Transition:
    if not facts.subscription_id:
        return _non_subscription_invoice(profile, facts)

    if facts.next_payment_attempt:
        logger.info(
            f"Payment failed for {profile.subscriber_id}, retry scheduled at {facts.next_payment_attempt}"
        )
        return Transition(outcome="retry_scheduled")

    return Transition(
        outcome="suspended",
        changes={"active": False, "plan_id": None, "subscription_status": "unpaid"},
        alerts=[
            Alert(
                alert_type="payment_failed_final",
                severity="warning",
                message=f"Final payment attempt failed for {profile.subscriber_id}, access suspended",
                metadata=_alert_metadata(profile, facts, previous_plan_id=profile.plan_id),
            )
        ],
    )


def _grace_period_elapsed(profile, facts, previous_plan, now) -> Transition:
    if not profile.cancel_at_period_end:
        return Transition(outcome="not_cancelling")
    if profile.current_period_end is not None and profile.current_period_end > now:
        return Transition(outcome="grace_period_running")
    return Transition(
        outcome="grace_period_ended",
        changes=_immediate_end("canceled"),
        conditions={"cancel_at_period_end": True},
    )


_TRANSITIONS: Dict[EventKind, Callable[..., Transition]] = {
    EventKind.CHECKOUT_COMPLETED: _checkout_completed,
    EventKind.CHECKOUT_EXPIRED: _checkout_expired,
    EventKind.SUBSCRIPTION_CREATED: _subscription_created,
    EventKind.SUBSCRIPTION_UPDATED: _subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: _subscription_deleted,
    EventKind.INVOICE_PAID: _invoice_paid,
    EventKind.INVOICE_PAYMENT_FAILED: _invoice_payment_failed,
    EventKind.GRACE_PERIOD_ELAPSED: _grace_period_elapsed,
}


def compute_transition(
    profile: SubscriptionProfile,
    facts: EventFacts,
    previous_plan: Optional[Plan],
    now: int,
) -> Transition:
    """
    Compute the effect of one event on one profile.

    Args:
        profile: Current stored profile
        facts: Normalized event facts
        previous_plan: Plan currently on the profile (used for up/downgrade)
        now: Current epoch seconds

    Returns:
        Transition with changes to write and alerts to emit after the write
    """
    transition_fn = _TRANSITIONS.get(facts.kind)
    if transition_fn is None:
        logger.info(f"No transition for event type {facts.event_type}")
        return Transition(outcome="ignored")

    if (
        facts.kind in _SUBSCRIPTION_SCOPED
        and facts.subscription_id
        and profile.stripe_subscription_id
        and facts.subscription_id != profile.stripe_subscription_id
    ):
        return Transition(
            outcome="subscription_mismatch",
            alerts=[
                Alert(
                    alert_type="subscription_mismatch",
                    severity="warning",
                    message=(
                        f"{facts.event_type} for subscription {facts.subscription_id} does not match "
                        f"current subscription {profile.stripe_subscription_id}"
                    ),
                    metadata=_alert_metadata(
                        profile, facts, current_subscription_id=profile.stripe_subscription_id
                    ),
                )
            ],
        )

    transition = transition_fn(profile, facts, previous_plan, now)

    if facts.status and facts.status not in KNOWN_SUBSCRIPTION_STATUSES:
        transition.alerts.append(
            Alert(
                alert_type="unknown_status",
                severity="info",
                message=f"Unrecognised subscription status {facts.status!r}",
                metadata=_alert_metadata(profile, facts, status=facts.status),
            )
        )

    return transition
