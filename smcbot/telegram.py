"""Utility for sending Telegram notifications."""
import asyncio
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


def send_telegram_message(token: str, chat_id: str, text: str) -> bool:
    """Send a Telegram message.

    Args:
        token: Bot token obtained from @BotFather.
        chat_id: ID of the chat to send the message to.
        text: Message text.

    Returns:
        True if the request succeeded, False otherwise.
    """
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text}
    try:
        resp = requests.post(url, data=payload, timeout=10)
    except requests.RequestException as e:
        logger.error("Telegram request error: %s", e)
        return False

    if resp.ok:
        return True

    # Try to log Telegram error details if present
    try:
        desc = resp.json().get('description')
    except ValueError:
        desc = resp.text[:200]
    logger.warning("Telegram send failed: status=%s, detail=%s", resp.status_code, desc)
    return False


class TelegramNotifier:
    """Operator alerts for trade events; a no-op when not configured"""

    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None):
        self.token = token
        self.chat_id = chat_id

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    def send(self, text: str) -> bool:
        if not self.enabled:
            return False
        return send_telegram_message(self.token, self.chat_id, text)

    async def notify(self, text: str) -> bool:
        """Send without blocking the event loop"""
        if not self.enabled:
            return False
        return await asyncio.to_thread(self.send, text)
