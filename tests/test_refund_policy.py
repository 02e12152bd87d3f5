from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from fitbook.refund_policy import cancellation_fee_cents, evaluate_refund, free_cancel_active


@pytest.mark.parametrize("paid,fee", [(0, 50), (999, 50), (1000, 100), (2000, 100), (2001, 200)])
def test_cancellation_fee_tiers(paid: int, fee: int) -> None:
    assert cancellation_fee_cents(paid) == fee


def test_late_consumer_cancellation() -> None:
    decision = evaluate_refund(900, 5, threshold_hours=12)
    assert (decision.percentage, decision.gross, decision.fee, decision.net) == (50, 450, 50, 400)


def test_on_time_consumer_cancellation() -> None:
    decision = evaluate_refund(1500, 24, threshold_hours=12)
    assert (decision.percentage, decision.gross, decision.fee, decision.net) == (100, 1500, 100, 1400)


def test_business_and_free_cancel_refund_everything() -> None:
    assert evaluate_refund(1500, 1, threshold_hours=12, initiated_by="business").net == 1500
    free = evaluate_refund(1500, 1, threshold_hours=12, has_free_cancel=True)
    assert (free.net, free.fee, free.basis) == (1500, 0, "free_cancel")


def test_net_refund_never_negative() -> None:
    assert evaluate_refund(60, 1, threshold_hours=12).net == 0


def test_free_cancel_expires() -> None:
    now = datetime(2030, 1, 7, 9, 0)
    booking = SimpleNamespace(has_free_cancel=True, free_cancel_expires_at=now + timedelta(hours=1))
    assert free_cancel_active(booking, now)
    assert not free_cancel_active(booking, now + timedelta(hours=2))
    assert not free_cancel_active(SimpleNamespace(has_free_cancel=False, free_cancel_expires_at=None), now)
