from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Optional

import httpx

from collospot.core.config import Settings, get_settings
from collospot.core.logging import mask_phone


logger = logging.getLogger(__name__)

AFRICASTALKING_URLS = {
    "sandbox": "https://api.sandbox.africastalking.com/version1/messaging",
    "live": "https://api.africastalking.com/version1/messaging",
}


def build_payment_confirmation(plan_name: str, end_time: datetime, session_token: str) -> str:
    expiry = end_time.strftime("%d %b %Y %H:%M UTC")
    return (
        f"Payment received. {plan_name} is active until {expiry}. "
        f"Your access code: {session_token}"
    )


class SmsNotifier:
    """Fire-and-forget SMS. ``send`` never raises and never waits for the provider."""

    def __init__(self, settings: Settings | None = None, max_workers: int | None = None):
        self.settings = settings or get_settings()
        self.provider = (self.settings.sms_provider or "console").lower()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or max(1, self.settings.sms_workers),
            thread_name_prefix="sms",
        )

    def send(self, to: str, message: str) -> Future | None:
        try:
            future = self._executor.submit(self._deliver, to, message)
        except RuntimeError as exc:
            # Executor already shut down (process exiting).
            logger.warning("SMS to %s dropped: %s", mask_phone(to), exc)
            return None
        future.add_done_callback(lambda f, to=to: self._log_outcome(f, to))
        return future

    def _log_outcome(self, future: Future, to: str) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("SMS delivery to %s failed: %s", mask_phone(to), exc)

    def _deliver(self, to: str, message: str) -> None:
        if self.provider == "console":
            logger.info("[sms][console] to=%s message=%s", mask_phone(to), message)
            return
        if self.provider == "africastalking":
            _send_via_africastalking(
                username=self.settings.africastalking_username,
                api_key=self.settings.africastalking_api_key,
                sender_id=self.settings.africastalking_sender_id,
                to=to,
                message=message,
            )
            return
        raise ValueError(f"Unsupported SMS_PROVIDER: {self.settings.sms_provider}")

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


def _send_via_africastalking(
    *,
    username: str,
    api_key: Optional[str],
    sender_id: Optional[str],
    to: str,
    message: str,
) -> None:
    if not api_key:
        raise ValueError("AFRICASTALKING_API_KEY is required when SMS_PROVIDER=africastalking")

    recipient = to if to.startswith("+") else f"+{to}"
    data = {"username": username, "to": recipient, "message": message}
    if sender_id:
        data["from"] = sender_id
    url = AFRICASTALKING_URLS["sandbox" if username == "sandbox" else "live"]
    headers = {"apiKey": api_key, "Accept": "application/json"}
    with httpx.Client(timeout=15) as client:
        res = client.post(url, data=data, headers=headers)
        if res.status_code >= 400:
            raise RuntimeError(f"Africa's Talking error: {res.status_code} {res.text}")
