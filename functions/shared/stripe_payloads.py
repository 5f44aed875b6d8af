"""
Stripe payload adapter.

Stripe moves fields between API versions (period ends moved from the
subscription onto its items, invoice subscription refs moved under
``parent``). Every lookup here walks the known shapes in a fixed order and
returns plain values, so the state machine never touches raw payloads.
"""

from typing import Any, Dict, Optional

from shared.models import EventFacts, EventKind, ResolvedPrice, StripeEvent

EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "checkout.session.expired": EventKind.CHECKOUT_EXPIRED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


def event_kind(event_type: str) -> EventKind:
    return EVENT_KINDS.get(event_type, EventKind.UNKNOWN)


def _dig(obj: Any, *path) -> Any:
    """Follow dict keys and list indexes, returning None on any miss."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def _ref(value: Any) -> Optional[str]:
    """Normalize an id-or-expanded-object reference to its id."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _epoch(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_period_end(obj: Dict[str, Any]) -> Optional[int]:
    """
    Current period end in epoch seconds.

    Fallback order: top-level ``current_period_end``, then the first
    subscription item's ``current_period_end``, then the first invoice
    line's ``period.end``.
    """
    for path in (
        ("current_period_end",),
        ("items", "data", 0, "current_period_end"),
        ("lines", "data", 0, "period", "end"),
    ):
        value = _epoch(_dig(obj, *path))
        if value is not None:
            return value
    return None


def extract_subscription_ref(obj: Dict[str, Any]) -> Optional[str]:
    """Subscription id referenced by a subscription, session or invoice."""
    if obj.get("object") == "subscription":
        return _ref(obj.get("id"))

    for path in (
        ("subscription",),
        ("lines", "data", 0, "subscription"),
        ("subscription_details", "subscription_id"),
        ("parent", "subscription_details", "subscription"),
        ("lines", "data", 0, "parent", "subscription_item_details", "subscription"),
    ):
        value = _ref(_dig(obj, *path))
        if value:
            return value
    return None


def extract_customer_ref(obj: Dict[str, Any]) -> Optional[str]:
    return _ref(obj.get("customer"))


def extract_price_id(obj: Dict[str, Any]) -> Optional[str]:
    """First price id on a subscription, expanded checkout session or invoice."""
    for path in (
        ("items", "data", 0, "price", "id"),
        ("line_items", "data", 0, "price", "id"),
        ("lines", "data", 0, "price", "id"),
        ("lines", "data", 0, "pricing", "price_details", "price"),
    ):
        value = _ref(_dig(obj, *path))
        if value:
            return value
    return None


def extract_metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Object metadata merged with the invoice's subscription metadata."""
    merged: Dict[str, Any] = {}
    for path in (
        ("parent", "subscription_details", "metadata"),
        ("subscription_details", "metadata"),
        ("metadata",),
    ):
        value = _dig(obj, *path)
        if isinstance(value, dict):
            merged.update(value)
    return merged


def extract_subscriber_hint(obj: Dict[str, Any]) -> Optional[str]:
    """Explicit subscriber id carried by the payload, if any."""
    metadata = extract_metadata(obj)
    for value in (
        metadata.get("subscriber_id"),
        metadata.get("userId"),
        obj.get("client_reference_id"),
    ):
        if isinstance(value, str) and value:
            return value
    return None


def build_facts(
    event: StripeEvent,
    subscriber_id: str,
    resolved_price: Optional[ResolvedPrice] = None,
    price_id: Optional[str] = None,
) -> EventFacts:
    """Reduce a verified event to the facts the state machine consumes."""
    obj = event.data_object
    kind = event_kind(event.event_type)

    status = obj.get("status") if kind in (
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    ) else None

    cancel_at_period_end = obj.get("cancel_at_period_end")
    if not isinstance(cancel_at_period_end, bool):
        cancel_at_period_end = None

    return EventFacts(
        kind=kind,
        subscriber_id=subscriber_id,
        event_id=event.event_id,
        event_type=event.event_type,
        resolved_price=resolved_price,
        price_id=price_id or (resolved_price.price_id if resolved_price else None),
        status=status,
        period_end=extract_period_end(obj),
        cancel_at_period_end=cancel_at_period_end,
        subscription_id=extract_subscription_ref(obj),
        customer_id=extract_customer_ref(obj),
        next_payment_attempt=_epoch(obj.get("next_payment_attempt")),
        metadata_plan_id=extract_metadata(obj).get("plan_id"),
    )
