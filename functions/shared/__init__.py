# Shared billing package
from .errors import BillingError
from .models import Plan, SubscriptionProfile, SubscriptionState, derive_state
from .response_utils import error_response, redirect_response, success_response

__all__ = [
    "BillingError",
    "Plan",
    "SubscriptionProfile",
    "SubscriptionState",
    "derive_state",
    "error_response",
    "redirect_response",
    "success_response",
]
