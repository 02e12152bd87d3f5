from __future__ import annotations

"""
EMBED_SUMMARY: Booking lifecycle: book with credits, cancel with refund policy, check-in, no-show and approval flow.
EMBED_TAGS: bookings, credits, capacity, cancellations, refunds, approvals
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from . import ledger
from .config import get_settings
from .context import RequestContext
from .database import transaction
from .discounts import DiscountResult, calculate_best_discount
from .errors import (
    ActionNotAllowedError,
    ClassCancelledError,
    ClassCompletedError,
    ClassFullError,
    ClassStartedError,
    InvalidPriceError,
    MaxActiveBookingsError,
    NotFoundError,
    TooEarlyError,
    TooLateError,
    UnauthorizedError,
)
from .models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    Business,
    ClassInstance,
    ClassTemplate,
    PaymentReservation,
    User,
    Venue,
)
from .refund_policy import RefundDecision, evaluate_refund, free_cancel_active, full_refund
from .utils import hours_between


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingResult:
    booking_id: str
    transaction_id: Optional[str]
    status: str
    final_price: int
    created: bool = True


@dataclass(frozen=True)
class CancellationResult:
    booking_id: str
    status: str
    refund_amount: int
    refund_percentage: int
    cancellation_fee: int
    refund_status: str = "credited"


# Booking pipeline stages


def load_bookable_instance(db: Session, class_instance_id: str) -> Tuple[ClassInstance, ClassTemplate]:
    instance = db.get(ClassInstance, class_instance_id)
    if instance is None or instance.deleted:
        raise NotFoundError("Class not found", field="class_instance_id")
    template = db.get(ClassTemplate, instance.template_id)
    if template is None:
        raise NotFoundError("Class template not found", field="template_id")
    if db.get(Business, instance.business_id) is None:
        raise NotFoundError("Business not found", field="business_id")
    return instance, template


def ensure_bookable_state(instance: ClassInstance) -> None:
    if instance.status == "cancelled":
        raise ClassCancelledError()
    if instance.status == "completed":
        raise ClassCompletedError()
    if instance.disable_bookings:
        raise ActionNotAllowedError("Bookings are disabled for this class")


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def ensure_within_booking_window(instance: ClassInstance, template: ClassTemplate, now: datetime) -> None:
    if now >= instance.start_time:
        raise ClassStartedError()
    hours_until_start = hours_between(now, instance.start_time)
    min_hours = _first_set(instance.booking_window_min_hours, template.booking_window_min_hours)
    max_hours = _first_set(instance.booking_window_max_hours, template.booking_window_max_hours)
    if min_hours is not None and hours_until_start < min_hours:
        raise TooLateError(f"Bookings close {min_hours}h before the class")
    if max_hours is not None and hours_until_start > max_hours:
        raise TooEarlyError(f"Bookings open {max_hours}h before the class")


def effective_capacity(instance: ClassInstance, template: ClassTemplate) -> int:
    return int(_first_set(instance.capacity, template.capacity, 0))


def cancellation_window_hours(instance: ClassInstance, template: Optional[ClassTemplate]) -> float:
    return _first_set(
        instance.cancellation_window_hours,
        template.cancellation_window_hours if template is not None else None,
        get_settings().late_cancel_threshold_hours,
    )


def active_hold_count(db: Session, class_instance_id: str, now: datetime, exclude_id: Optional[str] = None) -> int:
    """Seats held by unexpired direct-payment reservations."""
    stmt = select(func.count()).select_from(PaymentReservation).where(
        PaymentReservation.class_instance_id == class_instance_id,
        PaymentReservation.status == "pending",
        PaymentReservation.expires_at > now,
    )
    if exclude_id:
        stmt = stmt.where(PaymentReservation.id != exclude_id)
    return db.execute(stmt).scalar_one()


def ensure_capacity(db: Session, instance: ClassInstance, capacity: int, now: datetime) -> None:
    if instance.booked_count + active_hold_count(db, instance.id, now) >= capacity:
        raise ClassFullError()


def find_live_hold(db: Session, user_id: str, class_instance_id: str, now: datetime) -> Optional[PaymentReservation]:
    return db.execute(
        select(PaymentReservation).where(
            PaymentReservation.user_id == user_id,
            PaymentReservation.class_instance_id == class_instance_id,
            PaymentReservation.status == "pending",
            PaymentReservation.expires_at > now,
        )
    ).scalars().first()


def find_active_booking(db: Session, user_id: str, class_instance_id: str) -> Optional[Booking]:
    return db.execute(
        select(Booking).where(
            Booking.user_id == user_id,
            Booking.class_instance_id == class_instance_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
    ).scalars().first()


def ensure_active_booking_limit(db: Session, user_id: str, now: datetime) -> None:
    limit = get_settings().max_active_bookings_per_user
    active = db.execute(
        select(func.count())
        .select_from(Booking)
        .join(ClassInstance, ClassInstance.id == Booking.class_instance_id)
        .where(
            Booking.user_id == user_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            ClassInstance.start_time > now,
        )
    ).scalar_one()
    if active >= limit:
        raise MaxActiveBookingsError(f"At most {limit} upcoming bookings allowed")


def price_booking(instance: ClassInstance, template: ClassTemplate, now: datetime) -> DiscountResult:
    pricing = calculate_best_discount(instance, template, now, default_price=get_settings().default_class_price_cents)
    if pricing.original_price <= 0:
        raise InvalidPriceError(field="price")
    return pricing


def requires_confirmation(instance: ClassInstance, template: ClassTemplate) -> bool:
    return bool(_first_set(instance.requires_confirmation, template.requires_confirmation, False))


def build_class_snapshot(db: Session, instance: ClassInstance, template: ClassTemplate) -> dict:
    venue = db.get(Venue, instance.venue_id) if instance.venue_id else None
    return {
        "name": instance.name,
        "instructor": instance.instructor,
        "start_time": instance.start_time.isoformat(),
        "end_time": instance.end_time.isoformat(),
        "cancellation_window_hours": cancellation_window_hours(instance, template),
        "venue_name": venue.name if venue else None,
    }


def build_user_snapshot(user: User) -> dict:
    return {"name": user.name, "email": user.email}


def increment_booked_count(db: Session, class_instance_id: str, capacity: int) -> None:
    result = db.execute(
        update(ClassInstance)
        .where(ClassInstance.id == class_instance_id, ClassInstance.booked_count < capacity)
        .values(booked_count=ClassInstance.booked_count + 1)
    )
    if result.rowcount == 0:
        raise ClassFullError()


def decrement_booked_count(db: Session, class_instance_id: str) -> None:
    db.execute(
        update(ClassInstance)
        .where(ClassInstance.id == class_instance_id, ClassInstance.booked_count > 0)
        .values(booked_count=ClassInstance.booked_count - 1)
    )


def book_class(ctx: RequestContext, class_instance_id: str, description: Optional[str] = None) -> BookingResult:
    db, user, now = ctx.db, ctx.user, ctx.now
    with transaction(db):
        instance, template = load_bookable_instance(db, class_instance_id)
        ensure_bookable_state(instance)
        ensure_within_booking_window(instance, template, now)
        capacity = effective_capacity(instance, template)
        ensure_capacity(db, instance, capacity, now)

        existing = find_active_booking(db, user.id, instance.id)
        if existing is not None:
            return BookingResult(
                booking_id=existing.id,
                transaction_id=existing.credit_transaction_id,
                status=existing.status,
                final_price=existing.final_price,
                created=False,
            )

        if find_live_hold(db, user.id, instance.id, now) is not None:
            raise ActionNotAllowedError("A card payment for this class is in progress")
        ensure_active_booking_limit(db, user.id, now)
        pricing = price_booking(instance, template, now)

        booking = Booking(
            business_id=instance.business_id,
            user_id=user.id,
            class_instance_id=instance.id,
            status="awaiting_approval" if requires_confirmation(instance, template) else "pending",
            description=description,
            original_price=pricing.original_price,
            final_price=pricing.final_price,
            credits_used=pricing.final_price,
            applied_discount=pricing.applied_discount.to_dict() if pricing.applied_discount else None,
            class_instance_snapshot=build_class_snapshot(db, instance, template),
            user_snapshot=build_user_snapshot(user),
            booked_at=now,
        )
        db.add(booking)
        db.flush()

        if pricing.final_price > 0:
            spent = ledger.spend_credits(
                db,
                user.id,
                pricing.final_price,
                reason="booking",
                description=f"Booking for {instance.name}",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:spend",
            )
            transaction_id = spent.transaction_id
        else:
            transaction_id = f"free_booking_{booking.id}"
        booking.credit_transaction_id = transaction_id
        increment_booked_count(db, instance.id, capacity)

    logger.info(
        "booking created id=%s user=%s instance=%s price=%s status=%s",
        booking.id,
        user.id,
        instance.id,
        booking.final_price,
        booking.status,
    )
    if ctx.notifier is not None:
        ctx.dispatch(
            ctx.notifier.booking_confirmed, user.email, instance.name, instance.start_time, booking.final_price, booking.status
        )
    return BookingResult(
        booking_id=booking.id,
        transaction_id=transaction_id,
        status=booking.status,
        final_price=booking.final_price,
    )


# Post-booking transitions


def load_booking(db: Session, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", field="booking_id")
    return booking


def acting_party(ctx: RequestContext, booking: Booking) -> str:
    """'consumer' for the booking owner, 'business' for staff of the booking's business."""
    if booking.user_id == ctx.user.id:
        return "consumer"
    if ctx.staff_of(booking.business_id):
        return "business"
    raise UnauthorizedError("Not allowed to manage this booking")


def require_staff(ctx: RequestContext, booking: Booking) -> None:
    if not ctx.staff_of(booking.business_id):
        raise UnauthorizedError("Only the business can perform this action")


def require_status(booking: Booking, *statuses: str) -> None:
    if booking.status not in statuses:
        raise ActionNotAllowedError(f"Booking is {booking.status}", field="status")


def require_credit_paid(booking: Booking) -> None:
    if booking.paid_amount:
        raise ActionNotAllowedError("Card payments are refunded through the card refund flow", field="paid_amount")


def mark_cancelled(
    db: Session,
    booking: Booking,
    *,
    now: datetime,
    cancelled_by: str,
    reason: Optional[str],
    refund_amount: int,
    status: str = "cancelled",
) -> None:
    booking.status = status
    booking.cancelled_at = now
    booking.cancelled_by = cancelled_by
    booking.cancel_reason = reason
    booking.refund_amount = refund_amount
    decrement_booked_count(db, booking.class_instance_id)


def cancellation_decision(db: Session, booking: Booking, amount: int, actor: str, now: datetime) -> RefundDecision:
    instance = db.get(ClassInstance, booking.class_instance_id)
    template = db.get(ClassTemplate, instance.template_id) if instance else None
    if instance is None:
        return full_refund(amount, "class_missing")
    return evaluate_refund(
        amount,
        hours_between(now, instance.start_time),
        threshold_hours=cancellation_window_hours(instance, template),
        has_free_cancel=free_cancel_active(booking, now),
        initiated_by=actor,
    )


def _class_name(booking: Booking) -> str:
    return (booking.class_instance_snapshot or {}).get("name") or "class"


def cancel_booking(ctx: RequestContext, booking_id: str, reason: Optional[str] = None) -> CancellationResult:
    db, now = ctx.db, ctx.now
    with transaction(db):
        booking = load_booking(db, booking_id)
        actor = acting_party(ctx, booking)
        require_status(booking, *ACTIVE_BOOKING_STATUSES)
        require_credit_paid(booking)

        decision = cancellation_decision(db, booking, booking.credits_used, actor, now)
        mark_cancelled(db, booking, now=now, cancelled_by=actor, reason=reason, refund_amount=decision.net)
        if decision.net > 0:
            ledger.add_credits(
                db,
                booking.user_id,
                decision.net,
                "refund",
                reason=f"{actor}_cancellation",
                description=f"Refund for cancelled booking ({decision.basis})",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:refund",
            )

    logger.info(
        "booking cancelled id=%s by=%s basis=%s refund=%s fee=%s",
        booking.id,
        actor,
        decision.basis,
        decision.net,
        decision.fee,
    )
    notify_cancelled(ctx, booking, decision.net)
    return CancellationResult(
        booking_id=booking.id,
        status=booking.status,
        refund_amount=decision.net,
        refund_percentage=decision.percentage,
        cancellation_fee=decision.fee,
        refund_status="credited" if decision.net > 0 else "none",
    )


def notify_cancelled(ctx: RequestContext, booking: Booking, refund_amount: int) -> None:
    if ctx.notifier is None:
        return
    to = (booking.user_snapshot or {}).get("email")
    ctx.dispatch(ctx.notifier.booking_cancelled, to, _class_name(booking), refund_amount, booking.status)


def complete_booking(ctx: RequestContext, booking_id: str) -> Booking:
    settings = get_settings()
    db, now = ctx.db, ctx.now
    with transaction(db):
        booking = load_booking(db, booking_id)
        acting_party(ctx, booking)
        require_status(booking, "pending")
        instance = db.get(ClassInstance, booking.class_instance_id)
        opens = instance.start_time - timedelta(minutes=settings.checkin_opens_minutes_before)
        closes = instance.start_time + timedelta(hours=settings.checkin_closes_hours_after)
        if now < opens:
            raise ActionNotAllowedError("Check-in is not open yet")
        if now > closes:
            raise ActionNotAllowedError("Check-in window has closed")
        booking.status = "completed"
        booking.completed_at = now
    logger.info("booking completed id=%s", booking.id)
    return booking


def mark_no_show(ctx: RequestContext, booking_id: str) -> Booking:
    db = ctx.db
    with transaction(db):
        booking = load_booking(db, booking_id)
        require_staff(ctx, booking)
        require_status(booking, "pending")
        booking.status = "no_show"
    logger.info("booking no-show id=%s", booking.id)
    return booking


def approve_booking(ctx: RequestContext, booking_id: str) -> Booking:
    db = ctx.db
    with transaction(db):
        booking = load_booking(db, booking_id)
        require_staff(ctx, booking)
        require_status(booking, "awaiting_approval")
        booking.status = "pending"
    logger.info("booking approved id=%s", booking.id)
    return booking


def reject_booking(ctx: RequestContext, booking_id: str, reason: Optional[str] = None) -> CancellationResult:
    db, now = ctx.db, ctx.now
    with transaction(db):
        booking = load_booking(db, booking_id)
        require_staff(ctx, booking)
        require_status(booking, "awaiting_approval")
        require_credit_paid(booking)
        decision = full_refund(booking.credits_used, "rejected")
        mark_cancelled(
            db, booking, now=now, cancelled_by="business", reason=reason, refund_amount=decision.net, status="rejected"
        )
        if decision.net > 0:
            ledger.add_credits(
                db,
                booking.user_id,
                decision.net,
                "refund",
                reason="booking_rejected",
                description="Refund for rejected booking",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:refund",
            )
    logger.info("booking rejected id=%s refund=%s", booking.id, decision.net)
    notify_cancelled(ctx, booking, decision.net)
    return CancellationResult(
        booking_id=booking.id,
        status=booking.status,
        refund_amount=decision.net,
        refund_percentage=decision.percentage,
        cancellation_fee=0,
        refund_status="credited" if decision.net > 0 else "none",
    )


def get_booking(ctx: RequestContext, booking_id: str) -> Booking:
    booking = load_booking(ctx.db, booking_id)
    acting_party(ctx, booking)
    return booking


def list_user_bookings(
    db: Session, user_id: str, status: Optional[str] = None, page: int = 1, page_size: int = 50
) -> Tuple[List[Booking], int]:
    base = select(Booking).where(Booking.user_id == user_id)
    if status:
        base = base.where(Booking.status == status)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    items = db.execute(
        base.order_by(Booking.booked_at.desc()).offset((page - 1) * page_size).limit(page_size)
    ).scalars().all()
    return list(items), total
