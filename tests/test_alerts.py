"""
Tests for the alerting sink.
"""

import os
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError
from freezegun import freeze_time

from conftest import list_alerts
from shared.alerts import CRITICAL, INFO, WARNING, AlertSink
from shared.models import Alert


class TestRecord:
    def test_persists_alert(self, mock_dynamodb):
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))

        alert_id = sink.record("unresolved_subscriber", WARNING, "no match", {"event_id": "evt_1", "x": None})

        [item] = list_alerts(mock_dynamodb)
        assert item["alert_id"] == alert_id
        assert item["pk"] == f"ALERT#{alert_id}"
        assert item["severity"] == "warning"
        assert item["resolved"] is False
        assert item["metadata"] == {"event_id": "evt_1"}

    def test_critical_alert_publishes_to_sns(self, mock_dynamodb):
        topic_arn = "arn:aws:sns:us-east-1:123456789012:billing-alerts"
        os.environ["ALERT_TOPIC_ARN"] = topic_arn
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))

        with patch("shared.alerts.get_sns") as mock_get_sns:
            sink.record("missing_price_id", CRITICAL, "price gone", {"price_id": "price_x"})

        publish = mock_get_sns.return_value.publish
        publish.assert_called_once()
        assert publish.call_args.kwargs["TopicArn"] == topic_arn
        assert "missing_price_id" in publish.call_args.kwargs["Subject"]

    def test_non_critical_alert_does_not_publish(self, mock_dynamodb):
        os.environ["ALERT_TOPIC_ARN"] = "arn:aws:sns:us-east-1:123456789012:billing-alerts"
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))

        with patch("shared.alerts.get_sns") as mock_get_sns:
            sink.record("unknown_status", INFO, "odd status")

        mock_get_sns.assert_not_called()

    def test_sns_failure_is_logged_only(self, mock_dynamodb):
        os.environ["ALERT_TOPIC_ARN"] = "arn:aws:sns:us-east-1:123456789012:missing"
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))

        with patch("shared.alerts.get_sns") as mock_get_sns:
            mock_get_sns.return_value.publish.side_effect = Exception("sns down")
            assert sink.record("processing_error", CRITICAL, "boom") is not None

    def test_persistence_failure_is_not_raised(self):
        table = MagicMock()
        table.put_item.side_effect = ClientError(
            {"Error": {"Code": "InternalServerError", "Message": "boom"}}, "PutItem"
        )

        with patch("shared.alerts.emit_alert_metric"):
            assert AlertSink(table).record("processing_error", WARNING, "boom") is None

    def test_emit_alert(self, mock_dynamodb):
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))

        sink.emit(Alert("payment_failed_final", WARNING, "final failure", {"subscriber_id": "u1"}))

        assert [a["alert_type"] for a in list_alerts(mock_dynamodb)] == ["payment_failed_final"]


class TestListUnresolved:
    def test_newest_first(self, mock_dynamodb):
        sink = AlertSink(mock_dynamodb.Table("subsync-alerts"))
        with freeze_time("2026-03-01 12:00:00") as frozen:
            sink.record("first", INFO, "one")
            frozen.tick(5)
            sink.record("second", INFO, "two")

        alerts = sink.list_unresolved()

        assert [a["alert_type"] for a in alerts] == ["second", "first"]
