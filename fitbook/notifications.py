from __future__ import annotations

"""
EMBED_SUMMARY: Email notifications (fake and HTTP providers). Delivery problems are logged and never raised.
EMBED_TAGS: notifications, email, httpx, provider
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from .config import get_settings


logger = logging.getLogger(__name__)


class EmailProvider:
    def send(self, to: str, subject: str, body: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class FakeEmailProvider(EmailProvider):
    def __init__(self) -> None:
        self.outbox: List[Dict[str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append({"to": to, "subject": subject, "body": body})


class HttpEmailProvider(EmailProvider):
    def __init__(self, api_url: str, api_key: Optional[str], sender: str) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    def send(self, to: str, subject: str, body: str) -> None:
        payload = {"from": self.sender, "to": [to], "subject": subject, "text": body}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        with httpx.Client(timeout=10) as client:
            resp = client.post(self.api_url, headers=headers, json=payload)
            resp.raise_for_status()


def _money(cents: int) -> str:
    return f"{cents / 100:.2f}"


class Notifier:
    def __init__(self, provider: EmailProvider) -> None:
        self.provider = provider

    def _send(self, to: Optional[str], subject: str, body: str) -> None:
        if not to:
            return
        try:
            self.provider.send(to, subject, body)
        except Exception:
            logger.exception("email to=%s subject=%r failed", to, subject)

    def booking_confirmed(
        self, to: Optional[str], class_name: str, start_time: datetime, final_price: int, status: str
    ) -> None:
        if status == "awaiting_approval":
            body = f"Your request for {class_name} on {start_time:%Y-%m-%d %H:%M} is waiting for approval."
        else:
            body = f"You are booked into {class_name} on {start_time:%Y-%m-%d %H:%M}. Price: {_money(final_price)}."
        self._send(to, f"Booking received: {class_name}", body)

    def booking_cancelled(self, to: Optional[str], class_name: str, refund_amount: int, status: str = "cancelled") -> None:
        verb = "rejected" if status == "rejected" else "cancelled"
        body = f"Your booking for {class_name} was {verb}."
        if refund_amount:
            body += f" Refund: {_money(refund_amount)}."
        self._send(to, f"Booking {verb}: {class_name}", body)

    def credits_received(self, to: Optional[str], amount: int, reason: str) -> None:
        self._send(to, "Credits added", f"{_money(amount)} credits were added to your account ({reason}).")


def get_notifier() -> Notifier:
    settings = get_settings()
    if settings.email_provider == "http":
        if not settings.email_api_url:
            raise RuntimeError("Email API URL not configured")
        return Notifier(HttpEmailProvider(settings.email_api_url, settings.email_api_key, settings.email_from))
    return Notifier(FakeEmailProvider())
