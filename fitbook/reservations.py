from __future__ import annotations

"""
EMBED_SUMMARY: Direct card payment for a class: hold a seat while the payment sheet is open, confirm into a paid booking on success.
EMBED_TAGS: payments, reservations, stripe, capacity, bookings
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .booking_service import (
    active_hold_count,
    build_class_snapshot,
    build_user_snapshot,
    effective_capacity,
    ensure_bookable_state,
    ensure_capacity,
    ensure_within_booking_window,
    find_active_booking,
    find_live_hold,
    increment_booked_count,
    load_bookable_instance,
    price_booking,
    requires_confirmation,
)
from .config import get_settings
from .context import RequestContext
from .database import transaction
from .errors import ActionNotAllowedError, NotFoundError, PaymentGatewayError, UnauthorizedError
from .models import Booking, ClassInstance, ClassTemplate, PaymentReservation, User
from .payments_gateway import PaymentGateway
from .refunds import queue_refund


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassPaymentIntent:
    reservation_id: str
    payment_intent_id: str
    client_secret: Optional[str]
    ephemeral_key: Optional[str]
    customer_id: str
    amount: int
    original_price: int
    expires_at: datetime


def ensure_customer(db: Session, gateway: PaymentGateway, user: User) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer_id = gateway.create_customer(email=user.email, name=user.name, metadata={"user_id": user.id})
    user.stripe_customer_id = customer_id
    db.add(user)
    return customer_id


def create_class_payment_intent(ctx: RequestContext, gateway: PaymentGateway, class_instance_id: str) -> ClassPaymentIntent:
    settings = get_settings()
    db, user, now = ctx.db, ctx.user, ctx.now
    with transaction(db):
        instance, template = load_bookable_instance(db, class_instance_id)
        ensure_bookable_state(instance)
        ensure_within_booking_window(instance, template, now)
        if find_active_booking(db, user.id, instance.id) is not None:
            raise ActionNotAllowedError("Already booked into this class")
        if find_live_hold(db, user.id, instance.id, now) is not None:
            raise ActionNotAllowedError("A payment for this class is already in progress")
        ensure_capacity(db, instance, effective_capacity(instance, template), now)
        pricing = price_booking(instance, template, now)
        if pricing.final_price <= 0:
            raise ActionNotAllowedError("Free classes are booked with credits")

        customer_id = ensure_customer(db, gateway, user)
        ephemeral_key = gateway.create_ephemeral_key(customer_id)
        intent = gateway.create_payment_intent(
            amount=pricing.final_price,
            currency=settings.currency,
            customer_id=customer_id,
            metadata={
                "user_id": user.id,
                "class_instance_id": instance.id,
                "business_id": instance.business_id,
                "original_price": str(pricing.original_price),
            },
        )
        reservation = PaymentReservation(
            user_id=user.id,
            class_instance_id=instance.id,
            stripe_payment_intent_id=intent.id,
            stripe_customer_id=customer_id,
            price_cents=pricing.final_price,
            original_price_cents=pricing.original_price,
            applied_discount=pricing.applied_discount.to_dict() if pricing.applied_discount else None,
            status="pending",
            expires_at=now + timedelta(minutes=settings.reservation_ttl_minutes),
        )
        db.add(reservation)
        db.flush()
    logger.info("seat reserved id=%s instance=%s intent=%s", reservation.id, instance.id, intent.id)
    return ClassPaymentIntent(
        reservation_id=reservation.id,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        ephemeral_key=ephemeral_key,
        customer_id=customer_id,
        amount=pricing.final_price,
        original_price=pricing.original_price,
        expires_at=reservation.expires_at,
    )


def cancel_class_payment_intent(ctx: RequestContext, gateway: PaymentGateway, reservation_id: str) -> PaymentReservation:
    db = ctx.db
    with transaction(db):
        reservation = db.get(PaymentReservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", field="id")
        if reservation.user_id != ctx.user.id:
            raise UnauthorizedError("Not your reservation")
        if reservation.status == "cancelled":
            return reservation
        if reservation.status != "pending":
            raise ActionNotAllowedError(f"Reservation is {reservation.status}", field="status")
        try:
            gateway.cancel_payment_intent(reservation.stripe_payment_intent_id)
        except PaymentGatewayError as exc:
            logger.warning("could not cancel intent %s: %s", reservation.stripe_payment_intent_id, exc.message)
        reservation.status = "cancelled"
    return reservation


def _by_intent(db: Session, payment_intent_id: str) -> Optional[PaymentReservation]:
    return db.execute(
        select(PaymentReservation).where(PaymentReservation.stripe_payment_intent_id == payment_intent_id)
    ).scalars().first()


def _seat_available(db: Session, reservation: PaymentReservation, instance: ClassInstance, capacity: int, now: datetime) -> bool:
    if instance.deleted or instance.status != "scheduled":
        return False
    if reservation.status == "pending" and reservation.expires_at > now:
        # The seat was held for this reservation
        return instance.booked_count < capacity
    held = active_hold_count(db, instance.id, now, exclude_id=reservation.id)
    return instance.booked_count + held < capacity


def _give_up(db: Session, reservation: PaymentReservation, amount: int, reason: str) -> None:
    reservation.status = "failed"
    queue_refund(
        db,
        booking_id=None,
        payment_intent_id=reservation.stripe_payment_intent_id,
        amount=amount,
        reason=reason,
    )
    logger.warning("reservation %s could not be seated (%s); refund queued", reservation.id, reason)


def confirm_reservation(
    db: Session, payment_intent_id: str, now: datetime, amount_received: Optional[int] = None
) -> Optional[Booking]:
    """Turn a paid reservation into a booking. Runs inside the caller's unit of work."""
    reservation = _by_intent(db, payment_intent_id)
    if reservation is None:
        return None
    if reservation.status == "confirmed":
        return db.get(Booking, reservation.booking_id)

    paid = amount_received or reservation.price_cents
    instance = db.get(ClassInstance, reservation.class_instance_id)
    template = db.get(ClassTemplate, instance.template_id)
    capacity = effective_capacity(instance, template)
    if find_active_booking(db, reservation.user_id, instance.id) is not None:
        _give_up(db, reservation, paid, "already_booked")
        return None
    if not _seat_available(db, reservation, instance, capacity, now):
        _give_up(db, reservation, paid, "seat_unavailable")
        return None

    user = db.get(User, reservation.user_id)
    booking = Booking(
        business_id=instance.business_id,
        user_id=reservation.user_id,
        class_instance_id=instance.id,
        status="awaiting_approval" if requires_confirmation(instance, template) else "pending",
        original_price=reservation.original_price_cents,
        final_price=reservation.price_cents,
        credits_used=0,
        applied_discount=reservation.applied_discount,
        paid_amount=paid,
        stripe_payment_intent_id=payment_intent_id,
        class_instance_snapshot=build_class_snapshot(db, instance, template),
        user_snapshot=build_user_snapshot(user),
        booked_at=now,
    )
    db.add(booking)
    db.flush()
    increment_booked_count(db, instance.id, capacity)

    reservation.status = "confirmed"
    reservation.booking_id = booking.id
    logger.info("reservation confirmed id=%s booking=%s paid=%s", reservation.id, booking.id, paid)
    return booking


def fail_reservation(db: Session, payment_intent_id: str) -> bool:
    result = db.execute(
        update(PaymentReservation)
        .where(
            PaymentReservation.stripe_payment_intent_id == payment_intent_id,
            PaymentReservation.status == "pending",
        )
        .values(status="failed")
    )
    return result.rowcount > 0


def expire_reservations(db: Session, now: datetime) -> int:
    with transaction(db):
        result = db.execute(
            update(PaymentReservation)
            .where(PaymentReservation.status == "pending", PaymentReservation.expires_at <= now)
            .values(status="expired")
        )
    if result.rowcount:
        logger.info("expired %s seat reservations", result.rowcount)
    return result.rowcount
