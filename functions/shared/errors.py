"""
Billing error taxonomy.

Every error carries the HTTP status and machine-readable code it maps to, so
handlers can convert it with ``to_response()``.
"""

import json
from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self, headers: Optional[dict] = None) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        response_headers = {"Content-Type": "application/json"}
        if headers:
            response_headers.update(headers)

        return {
            "statusCode": self.status_code,
            "headers": response_headers,
            "body": json.dumps(body),
        }


class AuthenticationError(BillingError):
    """Raised when the caller is not an authenticated principal."""

    def __init__(self, message: str = "Please log in to continue", code: str = "unauthorized"):
        super().__init__(code=code, message=message, status_code=401)


class ValidationError(BillingError):
    """Raised for bad plan, currency, unavailable price or same-plan requests."""

    def __init__(self, message: str, code: str = "invalid_request", details: Optional[dict] = None):
        super().__init__(code=code, message=message, status_code=400, details=details)


class ConflictError(BillingError):
    """Raised when a plan change is already in progress."""

    def __init__(self, message: str = "A plan change is already in progress. Please wait for it to complete."):
        super().__init__(code="plan_change_in_progress", message=message, status_code=409)


class RateLimitError(BillingError):
    """Raised when checkout is attempted inside the cooldown window."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            code="rate_limited",
            message=f"Please wait {retry_after_seconds} seconds before trying again",
            status_code=429,
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds

    def to_response(self, headers: Optional[dict] = None) -> dict:
        response = super().to_response(headers)
        response["headers"]["Retry-After"] = str(self.retry_after_seconds)
        return response


class ResolutionError(BillingError):
    """Raised when a plan or subscriber lookup fails."""

    def __init__(self, message: str, code: str = "resolution_failed", details: Optional[dict] = None):
        super().__init__(code=code, message=message, status_code=422, details=details)


class ExternalServiceError(BillingError):
    """Raised when the payment processor call fails."""

    def __init__(self, message: str = "Payment system error", code: str = "stripe_error"):
        super().__init__(code=code, message=message, status_code=500)


class PersistenceError(BillingError):
    """Raised when the durable store rejects or fails a write."""

    def __init__(self, message: str = "Storage error", code: str = "persistence_error"):
        super().__init__(code=code, message=message, status_code=500)


class SignatureError(BillingError):
    """Raised when a webhook cannot be authenticated or decoded."""

    def __init__(self, message: str = "Invalid signature", code: str = "invalid_signature"):
        super().__init__(code=code, message=message, status_code=400)
