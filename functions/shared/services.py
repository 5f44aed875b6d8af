"""
Service container for the billing pipeline.

Built once per Lambda container and reused across invocations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from shared.alerts import AlertSink
from shared.event_ledger import EventLedger
from shared.identity import IdentityResolver
from shared.payment_processor import PaymentProcessor, configure_stripe
from shared.plan_catalog import PlanCatalog
from shared.profile_store import ProfileStore

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    profiles: ProfileStore
    plans: PlanCatalog
    ledger: EventLedger
    alerts: AlertSink
    identity: IdentityResolver
    processor: Optional[PaymentProcessor] = None

    @classmethod
    def create(cls, processor: Optional[PaymentProcessor] = None) -> "BillingServices":
        profiles = ProfileStore()
        alerts = AlertSink()
        return cls(
            profiles=profiles,
            plans=PlanCatalog(),
            ledger=EventLedger(),
            alerts=alerts,
            identity=IdentityResolver(profiles, alerts),
            processor=processor,
        )


_services: Optional[BillingServices] = None


def get_services(stripe_api_key: Optional[str] = None) -> BillingServices:
    """Return the process-wide services.

    With an API key, attaches a payment processor (replacing it if the key
    rotated). Without one, the services are storage-only.
    """
    global _services
    if _services is None:
        _services = BillingServices.create()
        logger.info("Initialized billing services")
    if stripe_api_key and (_services.processor is None or _services.processor.api_key != stripe_api_key):
        configure_stripe()
        _services.processor = PaymentProcessor(stripe_api_key)
    return _services


def reset_services() -> None:
    """Drop cached services. Used in tests for clean state."""
    global _services
    _services = None
