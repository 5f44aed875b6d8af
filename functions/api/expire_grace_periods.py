"""
Grace Period Expiry - Scheduled Lambda

Triggered by EventBridge. Ends subscriptions whose cancellation was
scheduled for the period end once that period has passed, in case the final
``customer.subscription.deleted`` webhook never arrived.

Each profile goes through the same compare-and-swap pipeline as webhooks.
"""

import logging
import time

from shared.alerts import CRITICAL
from shared.logging_utils import configure_structured_logging
from shared.models import EventFacts, EventKind
from shared.reconciliation import apply_transition
from shared.services import get_services

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def expire_grace_periods(services, now: int) -> dict:
    expired = skipped = errors = 0

    for profile in services.profiles.scan_expired_grace_periods(now):
        facts = EventFacts(
            kind=EventKind.GRACE_PERIOD_ELAPSED,
            subscriber_id=profile.subscriber_id,
            event_type="grace_period_elapsed",
        )
        try:
            transition = apply_transition(profile.subscriber_id, facts, services, now)
        except Exception as e:
            errors += 1
            logger.error(f"Failed to expire grace period for {profile.subscriber_id}: {e}", exc_info=True)
            services.alerts.record(
                "profile_update_failed",
                CRITICAL,
                f"Failed to end grace period for {profile.subscriber_id}: {e}",
                {"subscriber_id": profile.subscriber_id},
            )
            continue

        if transition.outcome == "grace_period_ended":
            expired += 1
        else:
            skipped += 1

    return {"expired": expired, "skipped": skipped, "errors": errors}


def handler(event, context):
    """End grace periods that have run out.

    Returns:
        Dict with counts of expired, skipped and failed profiles
    """
    configure_structured_logging()
    now = int(time.time())

    logger.info("Starting grace period expiry sweep")
    result = expire_grace_periods(get_services(), now)
    logger.info(
        f"Grace period sweep complete: {result['expired']} expired, "
        f"{result['skipped']} skipped, {result['errors']} errors"
    )
    return result
