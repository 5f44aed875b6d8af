"""
Alerting sink.

Every alert is persisted to the alerts table and logged. Critical alerts are
also published to SNS when ALERT_TOPIC_ARN is configured. Nothing here ever
raises into the billing flow.
"""

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb, get_sns
from shared.constants import ALERTS_TABLE
from shared.metrics import emit_alert_metric
from shared.models import Alert

logger = logging.getLogger(__name__)

CRITICAL = "critical"
WARNING = "warning"
INFO = "info"

_LOG_LEVELS = {
    CRITICAL: logging.ERROR,
    WARNING: logging.WARNING,
    INFO: logging.INFO,
}


def _clean_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Make metadata storable in DynamoDB (no floats, no None, no objects)."""
    cleaned = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, (bool, int, str, Decimal)):
            cleaned[key] = value
        elif isinstance(value, float):
            cleaned[key] = Decimal(str(value))
        else:
            cleaned[key] = str(value)
    return cleaned


class AlertSink:
    def __init__(self, table=None, topic_arn: Optional[str] = None):
        self._table = table
        self._topic_arn = topic_arn

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(ALERTS_TABLE)
        return self._table

    @property
    def topic_arn(self) -> Optional[str]:
        return self._topic_arn or os.environ.get("ALERT_TOPIC_ARN") or None

    def record(
        self,
        alert_type: str,
        severity: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Persist and log an alert.

        Returns:
            The alert id, or None if it could not be stored
        """
        metadata = _clean_metadata(metadata)
        created_at = datetime.now(timezone.utc).isoformat()
        alert_id = str(uuid.uuid4())

        logger.log(
            _LOG_LEVELS.get(severity, logging.WARNING),
            f"[Alert] [{severity.upper()}] [{alert_type}] {message}",
            extra={"alert_type": alert_type, "severity": severity, "alert_metadata": metadata},
        )

        stored = True
        try:
            self.table.put_item(
                Item={
                    "pk": f"ALERT#{alert_id}",
                    "sk": created_at,
                    "alert_id": alert_id,
                    "alert_type": alert_type,
                    "severity": severity,
                    "message": message,
                    "metadata": metadata,
                    "resolved": False,
                    "created_at": created_at,
                }
            )
        except ClientError as e:
            stored = False
            logger.error(f"Failed to persist {alert_type} alert: {e}")

        emit_alert_metric(severity)

        if severity == CRITICAL:
            self._notify(alert_type, message, metadata)

        return alert_id if stored else None

    def emit(self, alert: Alert) -> Optional[str]:
        return self.record(alert.alert_type, alert.severity, alert.message, alert.metadata)

    def _notify(self, alert_type: str, message: str, metadata: Dict[str, Any]) -> None:
        topic_arn = self.topic_arn
        if not topic_arn:
            logger.debug("ALERT_TOPIC_ARN not configured, skipping critical alert notification")
            return

        try:
            get_sns().publish(
                TopicArn=topic_arn,
                Subject=f"SubSync: {alert_type}"[:100],
                Message=(
                    f"CRITICAL billing alert: {alert_type}\n\n"
                    f"{message}\n\n"
                    f"Details:\n{json.dumps(metadata, default=str, indent=2)}"
                ),
            )
            logger.info(f"Published critical alert notification for {alert_type}")
        except Exception as e:
            logger.error(f"Failed to publish critical alert notification: {e}")

    def list_unresolved(self, limit: int = 50) -> List[dict]:
        """Unresolved alerts, newest first."""
        items: List[dict] = []
        scan_kwargs = {"FilterExpression": Attr("resolved").eq(False)}
        while True:
            response = self.table.scan(**scan_kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
        items.sort(key=lambda item: item["created_at"], reverse=True)
        return items[:limit]
