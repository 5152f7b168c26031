"""
Telegram notification client.

Sends Markdown messages through the Bot API sendMessage method. Delivery is
retried a bounded number of times with exponential backoff; both the email
processors and the webhook routes go through send_message().
"""
import logging
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.telegram.org"


class TelegramError(Exception):
    """
    Raised when a Telegram message cannot be delivered.

    This exception is raised for:
    - Network/connection errors after all retries
    - HTTP errors (4xx immediately, 5xx/429 after all retries)
    - API responses with ok=false
    """
    pass


class InvalidChatIdError(TelegramError):
    """Raised when a chat id is not an integer. Never retried."""
    pass


class _RetryableError(Exception):
    pass


def parse_chat_id(chat_id: str) -> int:
    try:
        return int(str(chat_id).strip())
    except ValueError as e:
        raise InvalidChatIdError(f"Invalid chat ID: {chat_id!r}") from e


class TelegramClient:
    """
    Minimal Telegram Bot API client.

    Usage:
        client = TelegramClient(bot_token)
        client.send_message("123456", "Your code: `482913`")
    """

    def __init__(
        self,
        bot_token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: int = 30,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        session: Optional[requests.Session] = None
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"TelegramClient(api_url={self.api_url!r}, max_retries={self.max_retries})"

    @property
    def _send_url(self) -> str:
        return f"{self.api_url}/bot{self.bot_token}/sendMessage"

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(self._send_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise _RetryableError(f"Request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableError(f"HTTP {response.status_code}: {response.text}")
        if response.status_code >= 400:
            raise TelegramError(f"HTTP {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise _RetryableError(f"Invalid JSON response: {response.text}") from e
        if not data.get('ok', False):
            raise _RetryableError(f"API error: {data.get('description', data)}")
        return data

    def send_message(self, chat_id: str, text: str) -> Dict[str, Any]:
        """
        Send a Markdown message to a chat.

        Args:
            chat_id: Destination chat id (integer as string)
            text: Message body

        Returns:
            Decoded API response

        Raises:
            InvalidChatIdError: If chat_id is not an integer
            TelegramError: If delivery fails after all attempts
        """
        payload = {
            'chat_id': parse_chat_id(chat_id),
            'text': text,
            'parse_mode': 'Markdown',
        }

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                data = self._post(payload)
                logger.info(f"Telegram message sent successfully (chat_id={chat_id}, attempt={attempt})")
                return data
            except _RetryableError as e:
                last_error = e
                logger.warning(
                    f"Failed to send Telegram message (chat_id={chat_id}, attempt {attempt}/{self.max_retries}): {e}"
                )
            except TelegramError as e:
                logger.error(f"Telegram rejected message (chat_id={chat_id}): {e}")
                raise

            if attempt < self.max_retries:
                # 1s, 2s, 4s ... with the default base delay
                backoff = self.retry_base_delay * (2 ** (attempt - 1))
                logger.info(f"Retrying Telegram message send in {backoff:.1f}s")
                time.sleep(backoff)

        logger.error(f"Failed to send Telegram message after {self.max_retries} attempts (chat_id={chat_id})")
        raise TelegramError(f"Failed to send message after {self.max_retries} attempts: {last_error}")
