"""
Shared pytest fixtures for SubSync tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"
SESSION_SECRET = "session-test-secret"

BASIC_PLAN = {
    "plan_id": "basic",
    "name": "Basic",
    "monthly_limit": 50,
    "limits": {"PLN": 50, "USD": 50},
    "prices": {"PLN": "price_basic_pln", "USD": "price_basic_usd"},
}
PRO_PLAN = {
    "plan_id": "pro",
    "name": "Pro",
    "monthly_limit": 200,
    "limits": {"PLN": 200, "USD": 200},
    "prices": {"PLN": "price_pro_pln", "USD": "price_pro_usd"},
}


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Reset cached AWS clients, secrets and services between tests."""
    yield
    from shared.aws_clients import reset_clients
    from shared.billing_utils import clear_secret_cache
    from shared.services import reset_services

    reset_clients()
    clear_secret_cache()
    reset_services()
    os.environ.pop("ALERT_TOPIC_ARN", None)


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Subscription profiles, looked up by Stripe refs from webhooks
    dynamodb.create_table(
        TableName="subsync-profiles",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # subscriber_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # PROFILE
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "stripe_subscription_id", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "subscription-index",
                "KeySchema": [{"AttributeName": "stripe_subscription_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "KEYS_ONLY"},
            },
            {
                "IndexName": "customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "KEYS_ONLY"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Plan catalog: PLAN#<id> items and PRICE#<price_id> lookup items
    dynamodb.create_table(
        TableName="subsync-plans",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "name_key", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "name-index",
                "KeySchema": [{"AttributeName": "name_key", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table: idempotency ledger and audit trail
    dynamodb.create_table(
        TableName="subsync-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # EVENT
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Operator alerts
    dynamodb.create_table(
        TableName="subsync-alerts",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # ALERT#<uuid>
            {"AttributeName": "sk", "KeyType": "RANGE"},  # created_at
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def seeded_plans(mock_dynamodb):
    """Plans table with Basic (50) and Pro (200) in PLN and USD."""
    from shared.models import Plan
    from shared.plan_catalog import PlanCatalog

    catalog = PlanCatalog(mock_dynamodb.Table("subsync-plans"))
    plans = {}
    for data in (BASIC_PLAN, PRO_PLAN):
        plan = Plan(**data)
        catalog.put_plan(plan)
        plans[plan.plan_id] = plan
    return plans


@pytest.fixture
def services(mock_dynamodb, seeded_plans):
    """Billing services over the mocked tables with a mocked payment processor."""
    from shared.alerts import AlertSink
    from shared.event_ledger import EventLedger
    from shared.identity import IdentityResolver
    from shared.payment_processor import PaymentProcessor
    from shared.plan_catalog import PlanCatalog
    from shared.profile_store import ProfileStore
    from shared.services import BillingServices

    profiles = ProfileStore(mock_dynamodb.Table("subsync-profiles"))
    alerts = AlertSink(mock_dynamodb.Table("subsync-alerts"))
    return BillingServices(
        profiles=profiles,
        plans=PlanCatalog(mock_dynamodb.Table("subsync-plans")),
        ledger=EventLedger(mock_dynamodb.Table("subsync-billing-events")),
        alerts=alerts,
        identity=IdentityResolver(profiles, alerts),
        processor=MagicMock(spec=PaymentProcessor),
    )


@pytest.fixture
def stripe_secrets(mock_dynamodb):
    """Store Stripe and session secrets in mocked Secrets Manager."""
    sm = boto3.client("secretsmanager", region_name="us-east-1")
    arns = {
        "STRIPE_SECRET_ARN": sm.create_secret(
            Name="subsync/stripe", SecretString=json.dumps({"key": STRIPE_API_KEY})
        )["ARN"],
        "STRIPE_WEBHOOK_SECRET_ARN": sm.create_secret(
            Name="subsync/stripe-webhook", SecretString=json.dumps({"secret": WEBHOOK_SECRET})
        )["ARN"],
        "SESSION_SECRET_ARN": sm.create_secret(
            Name="subsync/session", SecretString=SESSION_SECRET
        )["ARN"],
    }
    os.environ.update(arns)
    yield arns
    for name in arns:
        os.environ.pop(name, None)


def put_profile(dynamodb, subscriber_id: str, **fields):
    """Write a profile item directly. None values are left out."""
    item = {
        "pk": subscriber_id,
        "sk": "PROFILE",
        "active": False,
        "cancel_at_period_end": False,
        "pending_plan_change": False,
        "usage_count": 0,
        "version": 1,
    }
    item.update(fields)
    item = {k: v for k, v in item.items() if v is not None}
    dynamodb.Table("subsync-profiles").put_item(Item=item)
    return item


def get_profile_item(dynamodb, subscriber_id: str) -> dict:
    return dynamodb.Table("subsync-profiles").get_item(
        Key={"pk": subscriber_id, "sk": "PROFILE"}
    ).get("Item")


def list_alerts(dynamodb, alert_type: str = None) -> list:
    items = dynamodb.Table("subsync-alerts").scan().get("Items", [])
    if alert_type:
        items = [item for item in items if item["alert_type"] == alert_type]
    return items


def make_stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    """Build a Stripe webhook envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for the payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def session_cookie(subscriber_id: str = "sub_user_1", email: str = "jan@example.com") -> str:
    from shared.session import create_session_token

    return f"session={create_session_token(subscriber_id, email, secret=SESSION_SECRET)}"


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {"requestId": "test-request-id"},
    }
