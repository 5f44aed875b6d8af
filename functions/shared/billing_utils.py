"""Secrets for Stripe and session signing, read from Secrets Manager."""

import json
import logging
import os
import time
from typing import Dict, Optional, Tuple

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager

logger = logging.getLogger(__name__)

SECRET_CACHE_TTL = 300  # 5 minutes - allows secret rotation to take effect

# ARN -> (value, fetched_at)
_secret_cache: Dict[str, Tuple[str, float]] = {}


def _get_secret(arn_env: str, json_field: str) -> Optional[str]:
    """Read a secret named by an env var, accepting JSON ``{field: value}`` or a raw string."""
    # Read at runtime to allow tests to set the env var
    arn = os.environ.get(arn_env)
    if not arn:
        logger.error(f"{arn_env} not configured")
        return None

    cached = _secret_cache.get(arn)
    if cached and (time.time() - cached[1]) < SECRET_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret from {arn_env}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        value = secret_json.get(json_field) if isinstance(secret_json, dict) else None
        value = value or secret_value
    except json.JSONDecodeError:
        value = secret_value

    if not value:
        return None

    _secret_cache[arn] = (value, time.time())
    return value


def get_stripe_api_key() -> Optional[str]:
    """Retrieve Stripe API key (cached with TTL)."""
    return _get_secret("STRIPE_SECRET_ARN", "key")


def get_webhook_secret() -> Optional[str]:
    """Retrieve Stripe webhook signing secret (cached with TTL)."""
    return _get_secret("STRIPE_WEBHOOK_SECRET_ARN", "secret")


def get_session_secret() -> Optional[str]:
    """Retrieve session cookie signing secret (cached with TTL)."""
    return _get_secret("SESSION_SECRET_ARN", "secret")


def clear_secret_cache() -> None:
    _secret_cache.clear()
