"""
Domain types for billing reconciliation.

Plain dataclasses shared by the catalog, the profile store, the state machine
and the API handlers. DynamoDB items are converted at the store boundary with
``from_item`` so nothing past it sees ``Decimal``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.constants import (
    PENDING_CHANGE_TIMEOUT_SECONDS,
    SUSPENDED_STATUSES,
)


def _to_int(value: Any) -> Optional[int]:
    """Convert DynamoDB ``Decimal`` (or plain numbers) to int, keeping None."""
    if value is None:
        return None
    return int(value)


class SubscriptionState(str, Enum):
    """Conceptual subscription state derived from a profile."""

    NO_SUBSCRIPTION = "NoSubscription"
    PENDING_NEW = "PendingNew"
    ACTIVE = "Active"
    PENDING_CHANGE = "PendingChange"
    GRACE_PERIOD = "GracePeriod"
    SUSPENDED = "Suspended"
    ENDED = "Ended"


class EventKind(str, Enum):
    """Normalized billing event kinds the state machine understands."""

    CHECKOUT_COMPLETED = "checkout_completed"
    CHECKOUT_EXPIRED = "checkout_expired"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    GRACE_PERIOD_ELAPSED = "grace_period_elapsed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Plan:
    """A sellable plan with its per-currency prices and usage limits."""

    plan_id: str
    name: str
    monthly_limit: int
    limits: Dict[str, int] = field(default_factory=dict)
    prices: Dict[str, str] = field(default_factory=dict)
    price_display: Optional[Dict[str, str]] = None

    def limit_for(self, currency: Optional[str] = None) -> int:
        """Usage limit for the currency, falling back to the default limit."""
        if currency and currency.upper() in self.limits:
            return self.limits[currency.upper()]
        return self.monthly_limit

    def price_for(self, currency: str) -> Optional[str]:
        return self.prices.get(currency.upper()) or None

    @classmethod
    def from_item(cls, item: dict) -> "Plan":
        return cls(
            plan_id=item["plan_id"],
            name=item["name"],
            monthly_limit=_to_int(item.get("monthly_limit")) or 0,
            limits={k.upper(): _to_int(v) for k, v in (item.get("limits") or {}).items()},
            prices={k.upper(): v for k, v in (item.get("prices") or {}).items()},
            price_display=dict(item["price_display"]) if item.get("price_display") else None,
        )


@dataclass(frozen=True)
class ResolvedPrice:
    """A Stripe price id matched to its plan and currency."""

    price_id: str
    plan: Plan
    currency: str


@dataclass
class SubscriptionProfile:
    """Internally held subscription state for one subscriber."""

    subscriber_id: str
    plan_id: Optional[str] = None
    currency: Optional[str] = None
    active: bool = False
    cancel_at_period_end: bool = False
    pending_plan_change: bool = False
    target_plan_id: Optional[str] = None
    pending_since: Optional[int] = None
    subscription_status: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_end: Optional[int] = None
    usage_count: int = 0
    last_checkout_at: Optional[int] = None
    version: int = 0
    updated_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: dict) -> "SubscriptionProfile":
        return cls(
            subscriber_id=item["pk"],
            plan_id=item.get("plan_id"),
            currency=item.get("currency"),
            active=bool(item.get("active", False)),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
            pending_plan_change=bool(item.get("pending_plan_change", False)),
            target_plan_id=item.get("target_plan_id"),
            pending_since=_to_int(item.get("pending_since")),
            subscription_status=item.get("subscription_status"),
            stripe_customer_id=item.get("stripe_customer_id"),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            current_period_end=_to_int(item.get("current_period_end")),
            usage_count=_to_int(item.get("usage_count")) or 0,
            last_checkout_at=_to_int(item.get("last_checkout_at")),
            version=_to_int(item.get("version")) or 0,
            updated_at=item.get("updated_at"),
        )

    def has_blocking_pending_change(self, now: int, timeout: int = PENDING_CHANGE_TIMEOUT_SECONDS) -> bool:
        """True while a pending change is outstanding and not yet stale."""
        if not self.pending_plan_change:
            return False
        if self.pending_since is None:
            return False
        return now - self.pending_since < timeout


def derive_state(profile: Optional[SubscriptionProfile], now: int) -> SubscriptionState:
    """Map a stored profile onto its conceptual subscription state."""
    if profile is None:
        return SubscriptionState.NO_SUBSCRIPTION

    if profile.pending_plan_change:
        return SubscriptionState.PENDING_CHANGE if profile.active else SubscriptionState.PENDING_NEW

    if profile.active:
        if (
            profile.cancel_at_period_end
            and profile.current_period_end is not None
            and profile.current_period_end > now
        ):
            return SubscriptionState.GRACE_PERIOD
        return SubscriptionState.ACTIVE

    if profile.subscription_status in SUSPENDED_STATUSES:
        return SubscriptionState.SUSPENDED
    if profile.stripe_subscription_id:
        return SubscriptionState.ENDED
    return SubscriptionState.NO_SUBSCRIPTION


@dataclass(frozen=True)
class StripeEvent:
    """A verified webhook envelope decoded into plain data."""

    event_id: str
    event_type: str
    payload: Dict[str, Any]
    created: Optional[int] = None

    @property
    def data_object(self) -> Dict[str, Any]:
        return (self.payload.get("data") or {}).get("object") or {}


@dataclass(frozen=True)
class EventFacts:
    """Everything the state machine needs to know about one event."""

    kind: EventKind
    subscriber_id: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    resolved_price: Optional[ResolvedPrice] = None
    price_id: Optional[str] = None
    status: Optional[str] = None
    period_end: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    next_payment_attempt: Optional[int] = None
    metadata_plan_id: Optional[str] = None

    @property
    def plan(self) -> Optional[Plan]:
        return self.resolved_price.plan if self.resolved_price else None


@dataclass(frozen=True)
class Alert:
    alert_type: str
    severity: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Transition:
    """Result of applying one event to one profile.

    ``changes`` maps profile fields to new values; ``None`` clears the field.
    ``conditions`` are extra field equality preconditions for the write.
    """

    outcome: str
    changes: Dict[str, Any] = field(default_factory=dict)
    alerts: List[Alert] = field(default_factory=list)
    conditions: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.changes
