"""
Health Check Endpoint - GET /health

Returns API status and version information.
No authentication required.
"""

import logging
from datetime import datetime, timezone

from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import success_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

VERSION = "0.1.0"


def handler(event, context):
    """
    Lambda handler for health check.

    Returns:
        200 with status information
    """
    configure_structured_logging()
    set_request_id(event)

    return success_response(
        {
            "status": "healthy",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers={"Cache-Control": "no-cache"},
    )
