"""
Tests for create billing portal session handler.
"""

import json
from unittest.mock import patch

import pytest

from conftest import put_profile, session_cookie
from shared.errors import ExternalServiceError


@pytest.fixture
def portal(services, stripe_secrets):
    from api.create_billing_portal import handler

    services.processor.create_portal_session.return_value = {"url": "https://billing.stripe.com/p/session/1"}

    def call(cookie=None):
        request = {
            "httpMethod": "POST",
            "headers": {"cookie": cookie or session_cookie("u1")},
            "requestContext": {"requestId": "req-1"},
        }
        with patch("api.create_billing_portal.get_services", return_value=services):
            return handler(request, {})

    return call


class TestCreateBillingPortalHandler:
    """Tests for the create billing portal Lambda handler."""

    def test_returns_401_without_session(self, portal):
        result = portal(cookie="locale=pl")

        assert result["statusCode"] == 401
        assert json.loads(result["body"])["error"]["code"] == "unauthorized"

    def test_returns_400_without_customer(self, mock_dynamodb, portal):
        put_profile(mock_dynamodb, "u1")

        result = portal()

        assert result["statusCode"] == 400
        assert json.loads(result["body"])["error"]["code"] == "no_billing_account"

    def test_redirects_to_portal(self, mock_dynamodb, portal, services):
        put_profile(mock_dynamodb, "u1", stripe_customer_id="cus_1")

        result = portal()

        assert result["statusCode"] == 303
        assert result["headers"]["Location"] == "https://billing.stripe.com/p/session/1"
        services.processor.create_portal_session.assert_called_once()
        assert services.processor.create_portal_session.call_args.args[0] == "cus_1"

    def test_stripe_error_returns_500(self, mock_dynamodb, portal, services):
        put_profile(mock_dynamodb, "u1", stripe_customer_id="cus_1")
        services.processor.create_portal_session.side_effect = ExternalServiceError()

        result = portal()

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["error"]["code"] == "stripe_error"
