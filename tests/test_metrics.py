"""
Tests for CloudWatch metrics utilities module.

Tests cover metric emission and error handling using moto to mock CloudWatch.
"""

from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from shared.metrics import (
    NAMESPACE,
    emit_alert_metric,
    emit_checkout_metric,
    emit_metric,
    emit_webhook_metric,
)


@pytest.fixture
def mock_cloudwatch():
    with mock_aws():
        yield boto3.client("cloudwatch", region_name="us-east-1")


def _metric_names(cloudwatch):
    return {m["MetricName"] for m in cloudwatch.list_metrics(Namespace=NAMESPACE)["Metrics"]}


class TestEmitMetric:
    def test_emits_metric_with_dimensions(self, mock_cloudwatch):
        emit_metric("TestMetric", value=3, dimensions={"Flow": "in_place"})

        [metric] = mock_cloudwatch.list_metrics(Namespace=NAMESPACE, MetricName="TestMetric")["Metrics"]
        assert metric["Dimensions"] == [{"Name": "Flow", "Value": "in_place"}]

    def test_failure_is_swallowed(self):
        with patch("shared.metrics.get_cloudwatch") as get_cloudwatch:
            get_cloudwatch.return_value.put_metric_data.side_effect = RuntimeError("throttled")
            emit_metric("TestMetric")


class TestBillingMetrics:
    def test_webhook_metric(self, mock_cloudwatch):
        emit_webhook_metric("invoice.payment_succeeded", "processed")
        assert "WebhookEvents" in _metric_names(mock_cloudwatch)

    def test_checkout_metric(self, mock_cloudwatch):
        emit_checkout_metric("hosted_checkout")
        assert "CheckoutInitiated" in _metric_names(mock_cloudwatch)

    def test_alert_metric(self, mock_cloudwatch):
        emit_alert_metric("critical")
        assert "Alerts" in _metric_names(mock_cloudwatch)
