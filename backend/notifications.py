"""
Notification service for CodeDrop
Posts a summary of each new submission to a webhook so a reviewer
knows there is something waiting for approval
"""

import logging
from typing import Any, Dict, Optional

import httpx

from deployment.models import DeploymentRecord

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Webhook notifications for deployment events.

    Delivery is best effort: every failure is logged and reported as a
    False return, never raised into the deployment pipeline.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0,
                 http_client: Optional[httpx.Client] = None):
        self.webhook_url = (webhook_url or '').strip()
        self.http_client = http_client or httpx.Client(timeout=timeout)

    def _format_submission(self, record: DeploymentRecord) -> Dict[str, Any]:
        """Build the JSON payload for a new submission"""
        warnings = record.validation_result.get('warnings', []) if record.validation_result else []
        return {
            'event': 'deployment_submitted',
            'title': f"CodeDrop: deployment #{record.id} awaiting review",
            'message': (
                f"**{record.name}** targets `{record.target_type}/{record.target_slug}` "
                f"with {record.files_count} file(s) and {len(warnings)} warning(s)."
            ),
            'deployment': record.to_dict(),
        }

    def notify_submission(self, record: DeploymentRecord) -> bool:
        """
        Announce a new pending deployment.

        Returns:
            True if the webhook accepted the payload
        """
        payload = self._format_submission(record)

        if not self.webhook_url:
            logger.info(f"Notification (no webhook configured): {payload['title']}")
            return False

        if not self.webhook_url.startswith(('http://', 'https://')):
            logger.error(f"Webhook URL must start with http:// or https://: {self.webhook_url}")
            return False

        try:
            response = self.http_client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            logger.info(f"Submission notification sent for deployment {record.id}")
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"Webhook HTTP error {e.response.status_code}: {e}")
            return False
        except httpx.RequestError as e:
            logger.error(f"Webhook connection error: {e}")
            return False

    def close(self):
        """Clean up resources"""
        self.http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
