"""Operator notifications: chat webhook embeds and, for critical alerts, email.

Both channels are optional.  Without a webhook URL or SMTP credentials the
corresponding send is skipped with a debug log, so agents and the supervisor
can always call :meth:`Notifier.send`.
"""

import os
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

import requests

from config import get_webhook_url
from log_utils import setup_logger

logger = setup_logger(__name__)

SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587") or 587)

_COLORS = {
    "success": 3066993,
    "error": 15158332,
    "warning": 15105570,
    "info": 3447003,
}

EMAIL_LEVELS = {"error"}


class Notifier:
    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        bot_name: str = "Fib Agent",
        timeout: float = 10.0,
        email_address: Optional[str] = None,
        email_password: Optional[str] = None,
        email_receiver: Optional[str] = None,
    ) -> None:
        self.webhook_url = get_webhook_url() if webhook_url is None else webhook_url
        self.bot_name = bot_name
        self.timeout = timeout
        self.email_address = email_address if email_address is not None else os.getenv("EMAIL_ADDRESS")
        self.email_password = email_password if email_password is not None else os.getenv("EMAIL_PASSWORD")
        self.email_receiver = email_receiver if email_receiver is not None else os.getenv("EMAIL_RECEIVER")

    def send(self, title: str, message: str, level: str = "info") -> bool:
        """Send a notification; returns ``True`` when the webhook accepted it."""

        delivered = self._send_webhook(title, message, level)
        if level in EMAIL_LEVELS:
            self._send_email(title, message)
        return delivered

    def _send_webhook(self, title: str, message: str, level: str) -> bool:
        if not self.webhook_url:
            logger.debug("Webhook URL not set. Skipping notification: %s", title)
            return False
        embed = {
            "title": title,
            "description": message,
            "color": _COLORS.get(level, _COLORS["info"]),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = requests.post(
                self.webhook_url,
                json={"username": self.bot_name, "embeds": [embed]},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Error sending webhook notification: %s", exc)
            return False
        return True

    def _send_email(self, subject: str, message: str) -> None:
        if not (self.email_address and self.email_password and self.email_receiver):
            return
        body = (
            "<html><body style=\"font-family: 'Segoe UI', Arial, sans-serif;\">"
            f"<h3>{escape(subject)}</h3>"
            f"<div style='white-space:pre-wrap;'>{escape(message)}</div>"
            "</body></html>"
        )
        msg = MIMEMultipart()
        msg["From"] = self.email_address
        msg["To"] = self.email_receiver
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html"))
        try:
            with smtplib.SMTP(SMTP_SERVER, SMTP_PORT, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.email_address, self.email_password)
                server.send_message(msg)
            logger.info("Alert email sent: %s", subject)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email sending failed: %s", exc, exc_info=True)


__all__ = ["Notifier"]
