"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies the Stripe signature, records the event in the idempotency ledger
and reconciles it into the subscriber's profile.

Once an event is durably recorded the response is always 200: processing
failures are alerted for operators instead of being retried by Stripe.
"""

import base64
import binascii
import json
import logging

import stripe

from shared.alerts import CRITICAL
from shared.billing_utils import get_stripe_api_key, get_webhook_secret
from shared.errors import BillingError, PersistenceError, SignatureError
from shared.event_ledger import DUPLICATE
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_webhook_metric
from shared.models import StripeEvent
from shared.reconciliation import reconcile_event
from shared.response_utils import error_response, success_response
from shared.services import get_services

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SIGNATURE_TOLERANCE_SECONDS = 300


def _raw_body(event: dict) -> str:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SignatureError("Invalid webhook payload", code="invalid_webhook_payload") from e
    return body


def parse_event(event: dict, webhook_secret: str) -> StripeEvent:
    """
    Verify and decode a webhook delivery.

    Raises:
        SignatureError: missing/invalid signature or undecodable body
    """
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
    if not sig_header:
        raise SignatureError("Missing Stripe signature", code="missing_signature")

    payload = _raw_body(event)

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureError() from e

    try:
        envelope = json.loads(payload)
    except json.JSONDecodeError as e:
        raise SignatureError("Invalid webhook payload", code="invalid_webhook_payload") from e

    if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
        raise SignatureError("Invalid webhook payload", code="invalid_webhook_payload")

    return StripeEvent(
        event_id=envelope["id"],
        event_type=envelope["type"],
        payload=envelope,
        created=envelope.get("created"),
    )


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed / checkout.session.expired
    - customer.subscription.created / updated / deleted
    - invoice.payment_succeeded / invoice.payment_failed
    """
    configure_structured_logging()
    set_request_id(event)

    webhook_secret = get_webhook_secret()
    stripe_api_key = get_stripe_api_key()
    if not webhook_secret or not stripe_api_key:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    try:
        stripe_event = parse_event(event, webhook_secret)
    except SignatureError as e:
        logger.warning(f"Rejected webhook: {e.message}")
        return e.to_response()

    event_type = stripe_event.event_type
    logger.info(f"Processing Stripe event: {event_type} (id={stripe_event.event_id})")

    services = get_services(stripe_api_key)

    try:
        recorded = services.ledger.record_if_new(stripe_event.event_id, event_type, stripe_event.payload)
    except PersistenceError:
        emit_webhook_metric(event_type, "ledger_error")
        return error_response(500, "temporary_error", "Temporary error, please retry")

    if recorded == DUPLICATE:
        logger.info(f"Skipping duplicate event {stripe_event.event_id}")
        emit_webhook_metric(event_type, "duplicate")
        return success_response({"received": True, "duplicate": True})

    try:
        result = reconcile_event(stripe_event, services)
        services.ledger.mark_outcome(stripe_event.event_id, result.status, subscriber_id=result.subscriber_id)
        emit_webhook_metric(event_type, result.outcome)
    except Exception as e:
        if isinstance(e, PersistenceError):
            alert_type = "profile_update_failed"
        else:
            alert_type = "processing_error"
        logger.error(f"Failed to process {event_type} ({stripe_event.event_id}): {e}", exc_info=True)
        services.alerts.record(
            alert_type,
            CRITICAL,
            f"Failed to process {event_type}: {e}",
            {
                "event_id": stripe_event.event_id,
                "event_type": event_type,
                "error_code": e.code if isinstance(e, BillingError) else type(e).__name__,
            },
        )
        services.ledger.mark_outcome(stripe_event.event_id, "failed", error=str(e))
        emit_webhook_metric(event_type, "failed")

    return success_response({"received": True})
