from __future__ import annotations

"""
EMBED_SUMMARY: Card refunds for directly paid bookings. The refund intent is committed before the gateway call and retried until it succeeds.
EMBED_TAGS: refunds, stripe, cancellations, reconciliation, outbox
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .booking_service import (
    CancellationResult,
    acting_party,
    cancellation_decision,
    load_booking,
    mark_cancelled,
    require_staff,
    require_status,
    notify_cancelled,
)
from .context import RequestContext
from .database import transaction
from .errors import PaymentGatewayError
from .models import ACTIVE_BOOKING_STATUSES, Booking, RefundTask, SystemLog
from .payments_gateway import PaymentGateway
from .refund_policy import RefundDecision, full_refund


logger = logging.getLogger(__name__)


def queue_refund(
    db: Session, *, booking_id: Optional[str], payment_intent_id: str, amount: int, reason: str
) -> RefundTask:
    task = RefundTask(
        booking_id=booking_id,
        stripe_payment_intent_id=payment_intent_id,
        amount=amount,
        reason=reason,
        status="pending",
    )
    db.add(task)
    db.flush()
    return task


def execute_refund_task(db: Session, gateway: PaymentGateway, task: RefundTask) -> bool:
    """Attempt one gateway refund and persist the outcome. Returns True on success."""
    task.attempts += 1
    try:
        refund_id = gateway.refund(
            task.stripe_payment_intent_id,
            task.amount,
            metadata={"booking_id": task.booking_id or "", "refund_task_id": task.id},
        )
    except PaymentGatewayError as exc:
        task.status = "failed"
        task.last_error = exc.message
        db.add(
            SystemLog(
                actor="stripe",
                action="refund",
                entity="booking",
                entity_id=task.booking_id,
                status="failed",
                message=exc.message,
            )
        )
        db.commit()
        logger.error(
            "refund failed task=%s booking=%s amount=%s attempts=%s: %s",
            task.id,
            task.booking_id,
            task.amount,
            task.attempts,
            exc.message,
        )
        return False

    task.status = "succeeded"
    task.stripe_refund_id = refund_id
    task.last_error = None
    if task.booking_id:
        booking = db.get(Booking, task.booking_id)
        if booking is not None:
            booking.stripe_refund_id = refund_id
    db.commit()
    logger.info("refund succeeded task=%s booking=%s refund=%s", task.id, task.booking_id, refund_id)
    return True


def _settle_refund(ctx: RequestContext, gateway: PaymentGateway, booking: Booking, decision: RefundDecision) -> CancellationResult:
    db = ctx.db
    refund_status = "none"
    if decision.net > 0 and booking.stripe_payment_intent_id:
        with transaction(db):
            task = queue_refund(
                db,
                booking_id=booking.id,
                payment_intent_id=booking.stripe_payment_intent_id,
                amount=decision.net,
                reason=decision.basis,
            )
        refund_status = "succeeded" if execute_refund_task(db, gateway, task) else "failed"
    notify_cancelled(ctx, booking, decision.net)
    return CancellationResult(
        booking_id=booking.id,
        status=booking.status,
        refund_amount=decision.net,
        refund_percentage=decision.percentage,
        cancellation_fee=decision.fee,
        refund_status=refund_status,
    )


def cancel_booking_with_refund(
    ctx: RequestContext, gateway: PaymentGateway, booking_id: str, reason: Optional[str] = None
) -> CancellationResult:
    db, now = ctx.db, ctx.now
    with transaction(db):
        booking = load_booking(db, booking_id)
        actor = acting_party(ctx, booking)
        require_status(booking, *ACTIVE_BOOKING_STATUSES)
        decision = cancellation_decision(db, booking, booking.paid_amount or 0, actor, now)
        mark_cancelled(db, booking, now=now, cancelled_by=actor, reason=reason, refund_amount=decision.net)
    logger.info("paid booking cancelled id=%s by=%s refund=%s fee=%s", booking.id, actor, decision.net, decision.fee)
    return _settle_refund(ctx, gateway, booking, decision)


def reject_booking_with_refund(
    ctx: RequestContext, gateway: PaymentGateway, booking_id: str, reason: Optional[str] = None
) -> CancellationResult:
    db, now = ctx.db, ctx.now
    with transaction(db):
        booking = load_booking(db, booking_id)
        require_staff(ctx, booking)
        require_status(booking, "awaiting_approval")
        decision = full_refund(booking.paid_amount or 0, "rejected")
        mark_cancelled(
            db, booking, now=now, cancelled_by="business", reason=reason, refund_amount=decision.net, status="rejected"
        )
    logger.info("paid booking rejected id=%s refund=%s", booking.id, decision.net)
    return _settle_refund(ctx, gateway, booking, decision)


def retry_refund_tasks(db: Session, gateway: PaymentGateway, limit: int = 50) -> dict:
    tasks = db.execute(
        select(RefundTask)
        .where(RefundTask.status.in_(("pending", "failed")))
        .order_by(RefundTask.created_at)
        .limit(limit)
    ).scalars().all()
    succeeded = 0
    for task in tasks:
        if execute_refund_task(db, gateway, task):
            succeeded += 1
    return {"attempted": len(tasks), "succeeded": succeeded, "failed": len(tasks) - succeeded}
