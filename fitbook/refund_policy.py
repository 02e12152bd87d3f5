from __future__ import annotations

"""
EMBED_SUMMARY: Cancellation refund policy shared by the credit and card refund paths.
EMBED_TAGS: refunds, cancellations, fees, policy
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


FULL_REFUND = 100
LATE_REFUND = 50


@dataclass(frozen=True)
class RefundDecision:
    percentage: int
    gross: int
    fee: int
    net: int
    basis: str


def cancellation_fee_cents(paid: int) -> int:
    if paid < 1000:
        return 50
    if paid <= 2000:
        return 100
    return 200


def free_cancel_active(booking: Any, now: datetime) -> bool:
    if not booking.has_free_cancel:
        return False
    expires_at: Optional[datetime] = booking.free_cancel_expires_at
    return expires_at is None or now <= expires_at


def full_refund(amount: int, basis: str) -> RefundDecision:
    return RefundDecision(percentage=FULL_REFUND, gross=amount, fee=0, net=amount, basis=basis)


def evaluate_refund(
    amount: int,
    hours_until_class: float,
    *,
    threshold_hours: float,
    has_free_cancel: bool = False,
    initiated_by: str = "consumer",
) -> RefundDecision:
    """Refund owed for cancelling a booking that cost `amount` minor units.

    Business cancellations and an active free-cancel privilege refund everything.
    Otherwise consumers get 100% before the threshold and 50% after it, minus a tiered fee.
    """
    if initiated_by == "business":
        return full_refund(amount, "business_cancellation")
    if has_free_cancel:
        return full_refund(amount, "free_cancel")

    if hours_until_class >= threshold_hours:
        percentage, basis = FULL_REFUND, "on_time"
    else:
        percentage, basis = LATE_REFUND, "late"
    gross = (amount * percentage + 50) // 100
    fee = cancellation_fee_cents(amount)
    return RefundDecision(percentage=percentage, gross=gross, fee=fee, net=max(0, gross - fee), basis=basis)
