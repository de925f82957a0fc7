"""
Notifier adapters — implement the Notifier port.

TelegramNotifier posts plain-text messages to the Telegram Bot API
`sendMessage` endpoint using httpx, with tenacity retry on transient network
errors only. Every failure is captured into a Result and reported as
`send() -> False`; nothing propagates to the scheduler.

LoggingNotifier is the stand-in when no channel is configured: it logs the
text and reports the message as not delivered.
"""

from __future__ import annotations

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cert_renewal.railway import ErrorCode, Result

log = structlog.get_logger()

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramApiError(Exception):
    """Bot API answered with `ok: false`."""


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        api_base: str = TELEGRAM_API_BASE,
        enabled: bool = True,
        timeout: int = 30,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._api_base = api_base.rstrip("/")
        self._enabled = enabled
        self._timeout = timeout

    @property
    def is_enabled(self) -> bool:
        return self._enabled and bool(self._bot_token) and bool(self._chat_id)

    def send(self, text: str) -> bool:
        if not self.is_enabled:
            log.info("telegram.disabled", skipped_chars=len(text))
            return False
        return (
            Result.from_computation(
                lambda: self._do_send(text),
                ErrorCode.NOTIFICATION_ERROR,
                "Telegram notification failed",
            )
            .peek_failure(lambda err: log.error("telegram.send_failed", error=err.describe()))
            .is_success()
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _do_send(self, text: str) -> int:
        """HTTP call with retry — exceptions caught by from_computation."""
        with httpx.Client(timeout=self._timeout) as client:
            response = client.post(
                f"{self._api_base}/bot{self._bot_token}/sendMessage",
                json={"chat_id": self._chat_id, "text": text},
            )
            body = response.json()
            if not body.get("ok"):
                raise TelegramApiError(body.get("description") or f"HTTP {response.status_code}")
            message_id: int = body.get("result", {}).get("message_id", 0)
            log.info("telegram.sent", message_id=message_id)
            return message_id


class LoggingNotifier:
    def send(self, text: str) -> bool:
        log.info("notification.unsent", text=text)
        return False
