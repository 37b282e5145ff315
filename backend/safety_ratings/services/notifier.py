"""
Operator notifications.

Sends validation alerts by email through Resend, or only logs them in
demo mode (the default when no API key or recipient is configured).
"""

import asyncio
import logging
from typing import Any, Optional

import resend

from safety_ratings.core.config import settings
from safety_ratings.core.logging import get_logger, log_event

ALERT_SUBJECT = "Safety ratings: NHTSA sync status alert"

ALERT_TEMPLATE = """NHTSA sync validation completed.

Alerts:
{alerts}
Time: {timestamp}

Check the admin dashboard for details.
"""


def format_alerts(alerts: list[dict[str, Any]]) -> str:
    return "".join(f"[{alert['level'].upper()}] {alert['message']}\n" for alert in alerts)


class OperatorNotifier:
    """Delivers alert summaries to the configured operator address."""

    def __init__(
        self,
        recipient: Optional[str] = None,
        demo_mode: Optional[bool] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.recipient = recipient if recipient is not None else settings.ALERT_EMAIL
        self.sender = sender or settings.EMAIL_FROM
        self.logger = logger or get_logger(__name__)
        self._api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self._demo_mode = settings.EMAIL_DEMO_MODE if demo_mode is None else demo_mode

        if not self._demo_mode and not self._api_key:
            self.logger.warning("RESEND_API_KEY is not set, operator alerts run in demo mode")
            self._demo_mode = True

    @property
    def is_demo_mode(self) -> bool:
        return bool(self._demo_mode)

    async def notify(self, report: dict[str, Any], alerts: list[dict[str, Any]]) -> bool:
        """
        Send an alert summary.

        Returns:
            True when the message was delivered or logged in demo mode.
        """
        if not alerts:
            return False

        body = ALERT_TEMPLATE.format(alerts=format_alerts(alerts), timestamp=report.get("timestamp", ""))

        if self._demo_mode or not self.recipient:
            log_event(
                self.logger,
                logging.INFO,
                "operator_alert_demo",
                f"[DEMO] Operator alert: {len(alerts)} alert(s)",
                recipient=self.recipient,
                alert_count=len(alerts),
                body=body,
            )
            return True

        params = {
            "from": self.sender,
            "to": [self.recipient],
            "subject": ALERT_SUBJECT,
            "text": body,
        }

        try:
            resend.api_key = self._api_key
            # Resend is synchronous
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, lambda: resend.Emails.send(params))
        except Exception as e:
            log_event(
                self.logger,
                logging.ERROR,
                "operator_alert_failed",
                f"Operator alert delivery failed: {e}",
                recipient=self.recipient,
            )
            return False

        log_event(
            self.logger,
            logging.INFO,
            "operator_alert_sent",
            f"Operator notification sent: {len(alerts)} alert(s)",
            recipient=self.recipient,
            email_id=result.get("id") if isinstance(result, dict) else None,
        )
        return True
