from __future__ import annotations

import logging
from datetime import timedelta

from fitbook import booking_service
from fitbook.context import RequestContext
from fitbook.models import Booking
from fitbook.notifications import EmailProvider, Notifier

from conftest import NOW


class BrokenProvider(EmailProvider):
    def __init__(self) -> None:
        self.attempts = 0

    def send(self, to: str, subject: str, body: str) -> None:
        self.attempts += 1
        raise RuntimeError("provider rejected the message")


def test_provider_errors_are_logged_not_raised(caplog) -> None:
    provider = BrokenProvider()
    with caplog.at_level(logging.ERROR, logger="fitbook.notifications"):
        Notifier(provider).credits_received("member@example.test", 500, "gift")

    assert provider.attempts == 1
    assert "failed" in caplog.text


def test_missing_address_is_skipped() -> None:
    provider = BrokenProvider()
    Notifier(provider).booking_cancelled(None, "Morning Yoga", 0)
    assert provider.attempts == 0


def test_booking_survives_a_failing_email(db, factory) -> None:
    business = factory.business()
    instance = factory.instance(factory.template(business), NOW + timedelta(hours=24))
    user = factory.user(credits=1000)
    ctx = RequestContext(db=db, user=user, now=NOW, notifier=Notifier(BrokenProvider()))

    result = booking_service.book_class(ctx, instance.id)

    assert result.created
    db.expire_all()
    assert db.get(Booking, result.booking_id).status == "pending"
