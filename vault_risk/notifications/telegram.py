"""Telegram notification service."""
import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig
from ..models import HealthAlert, HealthAlertKind, PriceAlert
from .formatting import format_alert

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Send alerts via a Telegram bot."""

    def __init__(self, config: TelegramConfig) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.chat_id = config.chat_id

    async def _send_message(self, message: str, silent: bool = False) -> bool:
        """Send Telegram message using the alert bot."""
        if not self.alert_bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        url = f"https://api.telegram.org/bot{self.alert_bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": message,
            "disable_notification": silent,
        }

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.post(url, json=payload) as response:
                if response.status == 200:
                    return True
                logger.error("Failed to send Telegram message: %s", response.status)
                return False

    async def send_alert(self, alert: HealthAlert | PriceAlert) -> bool:
        """Send an alert; recoveries are delivered silently."""
        _, body = format_alert(alert)
        silent = isinstance(alert, HealthAlert) and alert.kind is HealthAlertKind.RECOVERY
        if await self._send_message(body, silent=silent):
            logger.info("Telegram alert sent")
            return True
        return False
