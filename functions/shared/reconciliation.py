"""
Reconciliation pipeline.

Glues identity resolution, plan resolution, the state machine and the
profile store together, with a compare-and-swap retry loop around each
profile mutation.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from shared.constants import MAX_CAS_ATTEMPTS
from shared.errors import ExternalServiceError, PersistenceError, ResolutionError
from shared.models import EventFacts, EventKind, ResolvedPrice, StripeEvent, Transition
from shared.services import BillingServices
from shared.state_machine import compute_transition
from shared.stripe_payloads import build_facts, event_kind, extract_price_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    status: str  # processed | ignored
    outcome: str
    subscriber_id: Optional[str] = None


def apply_transition(
    subscriber_id: str,
    facts: EventFacts,
    services: BillingServices,
    now: Optional[int] = None,
) -> Transition:
    """
    Read, compute and conditionally write until the write lands.

    Alerts are emitted only once the write succeeded (or the transition was
    a no-op), so each event raises its alerts once.

    Raises:
        ResolutionError: the profile does not exist
        PersistenceError: the write kept conflicting
    """
    now = int(time.time()) if now is None else now

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        profile = services.profiles.get_profile(subscriber_id)
        if profile is None:
            raise ResolutionError(
                f"No profile for subscriber {subscriber_id}",
                code="profile_not_found",
                details={"subscriber_id": subscriber_id},
            )

        previous_plan = None
        if facts.kind is EventKind.SUBSCRIPTION_UPDATED and profile.plan_id:
            previous_plan = services.plans.get_plan(profile.plan_id)

        transition = compute_transition(profile, facts, previous_plan, now)

        if transition.is_noop or services.profiles.apply_changes(
            subscriber_id, transition.changes, profile.version, transition.conditions
        ):
            for alert in transition.alerts:
                services.alerts.emit(alert)
            logger.info(
                f"{facts.kind.value} for {subscriber_id}: {transition.outcome}",
                extra={"subscriber_id": subscriber_id, "outcome": transition.outcome, "attempt": attempt},
            )
            return transition

        logger.info(f"Profile {subscriber_id} changed concurrently, retrying ({attempt}/{MAX_CAS_ATTEMPTS})")

    raise PersistenceError(f"Profile {subscriber_id} kept changing, gave up after {MAX_CAS_ATTEMPTS} attempts")


def _resolve_price(event: StripeEvent, kind: EventKind, services: BillingServices):
    """Find the event's price id, fetching checkout line items if needed."""
    obj = event.data_object
    price_id = extract_price_id(obj)

    if not price_id and kind is EventKind.CHECKOUT_COMPLETED and obj.get("id"):
        if services.processor is None:
            logger.warning(f"No payment processor to fetch line items for {obj['id']}")
        else:
            try:
                price_id = services.processor.retrieve_checkout_price_id(obj["id"])
            except ExternalServiceError as e:
                logger.error(f"Could not fetch line items for checkout session {obj['id']}: {e}")

    resolved: Optional[ResolvedPrice] = services.plans.resolve_price(price_id)
    return price_id, resolved


def reconcile_event(event: StripeEvent, services: BillingServices, now: Optional[int] = None) -> ReconcileResult:
    """Apply one verified, first-seen webhook event to its subscriber's profile."""
    kind = event_kind(event.event_type)
    if kind is EventKind.UNKNOWN:
        logger.info(f"Unhandled event type: {event.event_type}")
        return ReconcileResult(status="ignored", outcome="unhandled_event_type")

    subscriber_id = services.identity.resolve(event)
    if not subscriber_id:
        return ReconcileResult(status="ignored", outcome="unresolved_subscriber")

    price_id, resolved = None, None
    if kind in (
        EventKind.CHECKOUT_COMPLETED,
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
    ):
        price_id, resolved = _resolve_price(event, kind, services)

    facts = build_facts(event, subscriber_id, resolved_price=resolved, price_id=price_id)
    transition = apply_transition(subscriber_id, facts, services, now)
    return ReconcileResult(status="processed", outcome=transition.outcome, subscriber_id=subscriber_id)
