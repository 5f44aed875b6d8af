"""
Session cookie authentication.

Tokens are ``<base64url(json payload)>.<hex hmac-sha256>`` signed with the
session secret; the payload carries ``subscriber_id``, ``email`` and ``exp``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Optional

from shared.billing_utils import get_session_secret
from shared.errors import AuthenticationError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
SESSION_TTL_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class Principal:
    """An authenticated caller."""

    subscriber_id: str
    email: Optional[str] = None


def get_cookie(event: dict, name: str) -> Optional[str]:
    """Read a cookie from a REST (header) or HTTP API (cookies list) event."""
    headers = event.get("headers") or {}
    parts = list(event.get("cookies") or [])
    cookie_header = headers.get("cookie") or headers.get("Cookie")
    if cookie_header:
        parts.append(cookie_header)

    for part in parts:
        cookies = SimpleCookie()
        try:
            cookies.load(part)
        except CookieError:
            continue
        if name in cookies:
            return cookies[name].value
    return None


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def create_session_token(
    subscriber_id: str,
    email: Optional[str] = None,
    secret: Optional[str] = None,
    ttl_seconds: int = SESSION_TTL_SECONDS,
) -> str:
    secret = secret or get_session_secret()
    if not secret:
        raise AuthenticationError("Authentication not configured", code="session_not_configured")
    data = {"subscriber_id": subscriber_id, "email": email, "exp": int(time.time()) + ttl_seconds}
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    return f"{payload}.{_sign(payload, secret)}"


def verify_session_token(token: str, secret: Optional[str] = None) -> Optional[dict]:
    """Verify a session token and return the data if valid."""
    secret = secret or get_session_secret()
    if not secret or not token or "." not in token:
        return None

    payload, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload, secret)):
        return None

    try:
        data = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    if not isinstance(data, dict) or data.get("exp", 0) < time.time():
        return None
    return data


def authenticate(event: dict) -> Principal:
    """
    Resolve the calling principal from the session cookie.

    Raises:
        AuthenticationError: no cookie, bad signature or expired session
    """
    token = get_cookie(event, SESSION_COOKIE)
    if not token:
        raise AuthenticationError()

    data = verify_session_token(token)
    if not data or not data.get("subscriber_id"):
        logger.info("Rejected invalid or expired session")
        raise AuthenticationError("Session expired. Please log in again.", code="session_expired")

    return Principal(subscriber_id=data["subscriber_id"], email=data.get("email"))
