"""Email notification service."""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from ..config import EmailConfig
from ..models import HealthAlert, PriceAlert
from .formatting import format_alert

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Send alerts via email."""

    def __init__(self, config: EmailConfig) -> None:
        self.alert_email = config.alert_email
        self.smtp_server = config.smtp_server
        self.smtp_port = config.smtp_port
        self.sender_email = config.sender_email
        self.sender_password = config.sender_password

    async def send_alert(self, alert: HealthAlert | PriceAlert) -> bool:
        """Send email alert."""
        if not self.alert_email:
            logger.debug("No alert email configured, skipping email")
            return False

        if not self.sender_email or not self.sender_password:
            logger.warning("Email credentials not configured")
            return False

        subject, body = format_alert(alert)
        msg = MIMEMultipart()
        msg["From"] = self.sender_email
        msg["To"] = self.alert_email
        msg["Subject"] = subject

        msg.attach(MIMEText(body, "plain"))

        try:
            await asyncio.to_thread(self._deliver, msg)
            logger.info("Alert email sent to %s", self.alert_email)
            return True
        except Exception as e:
            logger.error("Failed to send email: %s", e)
            return False

    def _deliver(self, msg: MIMEMultipart) -> None:
        server = smtplib.SMTP(self.smtp_server, self.smtp_port)
        try:
            server.starttls()
            server.login(self.sender_email, self.sender_password)
            server.send_message(msg)
        finally:
            server.quit()
