"""
Backup event notifications and failover traffic redirection.

Notifications are best-effort: a failing webhook or mail server is logged
and never changes the outcome of the operation that triggered it.
"""

import json
import logging
import time
from typing import Dict, List, Optional

from django.conf import settings
from django.core.mail import send_mail
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

import requests

from .exceptions import DisasterRecoveryError

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10

# Events that are also mailed to the configured recipients
EMAIL_EVENTS = {
    "backup_failed",
    "backup_verification_failed",
    "restore_failed",
    "retention_failed",
    "disaster_recovery_failed",
    "data_loss_recovered",
}


class Notifier:
    """Sends backup events to the configured webhook and mailbox."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        email_recipients: Optional[List[str]] = None,
        from_email: Optional[str] = None,
        timeout: int = WEBHOOK_TIMEOUT,
    ):
        self.webhook_url = webhook_url
        self.email_recipients = list(email_recipients or [])
        self.from_email = from_email
        self.timeout = timeout

    def notify(self, event_type: str, payload: Optional[dict] = None) -> Dict[str, bool]:
        """
        Send an event through every configured channel.

        Returns:
            Dictionary with delivery status for each channel
        """
        results = {"webhook": False, "email": False}
        body = {
            "type": event_type,
            "data": payload or {},
            "timestamp": timezone.now().isoformat(),
        }

        try:
            results["webhook"] = self._send_webhook(body)
        except Exception as e:
            logger.error(f"Failed to send {event_type} webhook notification: {e}")

        if event_type in EMAIL_EVENTS:
            try:
                results["email"] = self._send_email(event_type, body)
            except Exception as e:
                logger.error(f"Failed to send {event_type} email notification: {e}")

        return results

    def _send_webhook(self, body: dict) -> bool:
        if not self.webhook_url:
            logger.debug("No backup notification webhook URL configured")
            return False

        response = requests.post(
            self.webhook_url,
            data=json.dumps(body, cls=DjangoJSONEncoder),
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )

        if response.status_code in [200, 201, 202, 204]:
            logger.info(f"Webhook notification sent for {body['type']}")
            return True

        logger.warning(
            f"Webhook notification failed for {body['type']}: status={response.status_code}"
        )
        return False

    def _send_email(self, event_type: str, body: dict) -> bool:
        if not self.email_recipients:
            return False

        subject = f"[Backup] {event_type.replace('_', ' ').title()}"
        message = json.dumps(body, cls=DjangoJSONEncoder, indent=2)
        sent = send_mail(
            subject,
            message,
            self.from_email,
            self.email_recipients,
            fail_silently=False,
        )
        logger.info(f"Sent {event_type} email to {len(self.email_recipients)} recipients")
        return sent > 0


class TrafficRouter:
    """Redirects traffic to the failover region through a webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        health_check_url: Optional[str] = None,
        timeout: int = WEBHOOK_TIMEOUT,
        health_check_attempts: int = 5,
        health_check_interval: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.health_check_url = health_check_url
        self.timeout = timeout
        self.health_check_attempts = health_check_attempts
        self.health_check_interval = health_check_interval

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def redirect(self, target: str, region: str = "") -> None:
        """
        Ask the router to send traffic to ``target``.

        Raises:
            DisasterRecoveryError: If the router is not configured or rejects the request
        """
        if not self.webhook_url:
            raise DisasterRecoveryError("No failover redirect webhook configured")

        try:
            response = requests.post(
                self.webhook_url,
                json={"target": target, "failed_region": region, "timestamp": timezone.now().isoformat()},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DisasterRecoveryError(f"Traffic redirect request failed: {e}") from e

        if response.status_code not in [200, 201, 202, 204]:
            raise DisasterRecoveryError(
                f"Traffic redirect rejected: status={response.status_code}"
            )
        logger.info(f"Traffic redirected to {target}")

    def wait_until_healthy(self) -> Optional[bool]:
        """
        Poll the health check URL.

        Returns None when no health check is configured.
        """
        if not self.health_check_url:
            return None

        for attempt in range(1, self.health_check_attempts + 1):
            try:
                response = requests.get(self.health_check_url, timeout=self.timeout)
                if response.status_code == 200:
                    logger.info(f"Failover target healthy after {attempt} attempt(s)")
                    return True
                logger.warning(f"Health check attempt {attempt}: status={response.status_code}")
            except requests.RequestException as e:
                logger.warning(f"Health check attempt {attempt} failed: {e}")

            if attempt < self.health_check_attempts:
                time.sleep(self.health_check_interval)

        return False


def get_notifier() -> Notifier:
    return Notifier(
        webhook_url=getattr(settings, "BACKUP_NOTIFICATION_WEBHOOK_URL", None),
        email_recipients=getattr(settings, "BACKUP_NOTIFICATION_EMAILS", []),
        from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
    )


def get_traffic_router() -> TrafficRouter:
    return TrafficRouter(
        webhook_url=getattr(settings, "BACKUP_FAILOVER_REDIRECT_WEBHOOK_URL", None),
        health_check_url=getattr(settings, "BACKUP_FAILOVER_HEALTH_CHECK_URL", None),
    )
