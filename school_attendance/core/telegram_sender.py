import httpx
import logging
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from school_attendance.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class TelegramSendError(Exception):
    """Non-200 response from the Bot API"""


async def send_telegram_message(
    token: str,
    chat_id: str,
    text: str,
    parse_mode: str = "HTML",
    attempts: int = 3,
    client: httpx.AsyncClient = None,
) -> None:
    """
    Send a message through the Telegram Bot API, retrying transient failures.

    Raises:
        ExternalServiceError: when every attempt failed
    """
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}

    async def _post(http: httpx.AsyncClient):
        response = await http.post(url, json=payload, timeout=10.0)
        if response.status_code != 200:
            raise TelegramSendError(response.text)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type((httpx.HTTPError, TelegramSendError)),
        ):
            with attempt:
                if client is not None:
                    await _post(client)
                else:
                    async with httpx.AsyncClient() as http:
                        await _post(http)
    except RetryError as e:
        last = e.last_attempt.exception() if e.last_attempt else None
        logger.error(f"Failed to send Telegram message: {str(last)}")
        raise ExternalServiceError("telegram", "Failed to send Telegram message")
