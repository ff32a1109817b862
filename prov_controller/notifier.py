"""
Best-effort chat notifications.
"""

import logging
from abc import ABC, abstractmethod

import requests

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send(self, text: str) -> bool:
        """Deliver a message; never raises. Returns True if delivered."""
        pass


class NullNotifier(Notifier):
    """Used when no channel is configured; messages only go to the log."""

    def send(self, text: str) -> bool:
        logger.info(f"[notify] {text}")
        return False


class TelegramNotifier(Notifier):
    def __init__(
        self,
        token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
        attempts: int = 2,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url = f"{api_base.rstrip('/')}/bot{token}/sendMessage"
        self.chat_id = chat_id
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, text: str) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                response = self.session.post(
                    self.url,
                    data={"chat_id": self.chat_id, "text": text},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return True
            except requests.exceptions.RequestException as e:
                logger.warning(f"Telegram notification failed (attempt {attempt}/{self.attempts}): {e}")
        return False


def notifier_from_settings(token: str | None, chat_id: str | None) -> Notifier:
    if token and chat_id:
        return TelegramNotifier(token, chat_id)
    return NullNotifier()
