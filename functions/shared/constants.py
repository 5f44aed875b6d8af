"""
Shared constants for SubSync.
"""

import os

# DynamoDB tables
# Use `or` to handle empty string env vars (CDK fallback sets "" when not configured)
PROFILES_TABLE = os.environ.get("PROFILES_TABLE") or "subsync-profiles"
PLANS_TABLE = os.environ.get("PLANS_TABLE") or "subsync-plans"
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE") or "subsync-billing-events"
ALERTS_TABLE = os.environ.get("ALERTS_TABLE") or "subsync-alerts"

PROFILE_SK = "PROFILE"

APP_URL = os.environ.get("APP_URL") or "http://localhost:3000"

# Checkout
CHECKOUT_COOLDOWN_SECONDS = int(os.environ.get("CHECKOUT_COOLDOWN_SECONDS") or "60")
# Stripe requires hosted checkout sessions to live at least 30 minutes
CHECKOUT_SESSION_TTL_SECONDS = int(os.environ.get("CHECKOUT_SESSION_TTL_SECONDS") or "1800")
# A pending change older than this belongs to an abandoned checkout
PENDING_CHANGE_TIMEOUT_SECONDS = int(os.environ.get("PENDING_CHANGE_TIMEOUT_SECONDS") or "3600")

SUPPORTED_CURRENCIES = ("PLN", "USD")

# Stripe subscription statuses
ACCESS_GRANTING_STATUSES = frozenset({"active", "trialing"})
KNOWN_SUBSCRIPTION_STATUSES = frozenset(
    {
        "active",
        "trialing",
        "past_due",
        "canceled",
        "unpaid",
        "incomplete",
        "incomplete_expired",
        "paused",
    }
)
SUSPENDED_STATUSES = frozenset({"unpaid", "past_due"})

# Optimistic concurrency
MAX_CAS_ATTEMPTS = 3

# Webhook ledger retention
BILLING_EVENT_TTL_DAYS = 90

# Timeouts
STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS") or "10")

# DynamoDB throttling error codes
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
