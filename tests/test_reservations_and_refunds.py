from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from fitbook import booking_service, refunds, reservations
from fitbook.database import transaction
from fitbook.errors import ActionNotAllowedError, ClassFullError, UnauthorizedError
from fitbook.models import Booking, Business, ClassInstance, PaymentReservation, RefundTask, SystemLog, User
from fitbook.payments_gateway import FakePaymentGateway

from conftest import NOW


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def studio(factory):
    business = factory.business()
    return factory.staff(business), factory.template(business)


def _paid_booking(db, ctx, gateway, instance_id) -> Booking:
    intent = reservations.create_class_payment_intent(ctx, gateway, instance_id)
    with transaction(db):
        booking = reservations.confirm_reservation(db, intent.payment_intent_id, ctx.now)
    return booking


def test_payment_intent_holds_a_seat(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=1)
    payer = factory.user(name="Payer")

    intent = reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)

    assert intent.amount == 1000
    assert intent.expires_at == NOW + timedelta(minutes=10)
    assert intent.client_secret
    assert db.get(User, payer.id).stripe_customer_id in gateway.customers
    with pytest.raises(ClassFullError):
        booking_service.book_class(make_ctx(factory.user(credits=1000, name="Other")), instance.id)


def test_free_class_cannot_be_paid_by_card(factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    rule = {"id": "free", "name": "Free", "condition": {"type": "always"}, "discount": {"type": "fixed_amount", "value": 1000}}
    instance = factory.instance(template, NOW + timedelta(hours=24), discount_rules=[rule])

    with pytest.raises(ActionNotAllowedError):
        reservations.create_class_payment_intent(make_ctx(factory.user()), gateway, instance.id)


def test_cancelling_the_intent_releases_the_seat(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=1)
    payer = factory.user(name="Payer")
    intent = reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)

    with pytest.raises(UnauthorizedError):
        reservations.cancel_class_payment_intent(make_ctx(factory.user(name="Other")), gateway, intent.reservation_id)
    reservation = reservations.cancel_class_payment_intent(make_ctx(payer), gateway, intent.reservation_id)

    assert reservation.status == "cancelled"
    assert gateway.cancelled_intents == [intent.payment_intent_id]
    booked = booking_service.book_class(make_ctx(factory.user(credits=1000, name="Next")), instance.id)
    assert booked.created


def test_expired_holds_are_swept(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=1)
    intent = reservations.create_class_payment_intent(make_ctx(factory.user(name="Slow")), gateway, instance.id)

    assert reservations.expire_reservations(db, NOW + timedelta(minutes=5)) == 0
    assert reservations.expire_reservations(db, NOW + timedelta(minutes=11)) == 1
    db.expire_all()
    assert db.get(PaymentReservation, intent.reservation_id).status == "expired"


def test_late_payment_for_a_taken_seat_is_refunded(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=1)
    slow = factory.user(name="Slow")
    intent = reservations.create_class_payment_intent(make_ctx(slow), gateway, instance.id)

    later = NOW + timedelta(minutes=20)
    reservations.expire_reservations(db, later)
    booking_service.book_class(make_ctx(factory.user(credits=1000, name="Quick"), now=later), instance.id)

    with transaction(db):
        assert reservations.confirm_reservation(db, intent.payment_intent_id, later, amount_received=1000) is None

    db.expire_all()
    assert db.get(PaymentReservation, intent.reservation_id).status == "failed"
    task = db.execute(select(RefundTask)).scalars().one()
    assert (task.stripe_payment_intent_id, task.amount, task.status) == (intent.payment_intent_id, 1000, "pending")
    assert db.get(ClassInstance, instance.id).booked_count == 1


def test_late_payment_with_free_seat_still_books(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=2)
    intent = reservations.create_class_payment_intent(make_ctx(factory.user(name="Slow")), gateway, instance.id)

    later = NOW + timedelta(minutes=20)
    reservations.expire_reservations(db, later)
    with transaction(db):
        booking = reservations.confirm_reservation(db, intent.payment_intent_id, later)

    assert booking is not None
    assert booking.paid_amount == 1000
    db.expire_all()
    assert db.get(ClassInstance, instance.id).booked_count == 1


def test_cancelling_a_paid_booking_refunds_the_card(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    payer = factory.user(name="Payer")
    booking = _paid_booking(db, make_ctx(payer), gateway, instance.id)

    result = refunds.cancel_booking_with_refund(make_ctx(payer), gateway, booking.id)

    assert result.refund_amount == 900
    assert result.refund_status == "succeeded"
    assert gateway.refunds[0]["amount"] == 900
    assert gateway.refunds[0]["payment_intent"] == booking.stripe_payment_intent_id
    db.expire_all()
    stored = db.get(Booking, booking.id)
    assert stored.status == "cancelled"
    assert stored.stripe_refund_id == gateway.refunds[0]["id"]
    assert db.get(ClassInstance, instance.id).booked_count == 0
    assert db.get(User, payer.id).credits == 0


def test_failed_card_refund_is_kept_for_retry(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    payer = factory.user(name="Payer")
    booking = _paid_booking(db, make_ctx(payer), gateway, instance.id)

    result = refunds.cancel_booking_with_refund(make_ctx(payer), FakePaymentGateway(fail_refunds=True), booking.id)

    assert result.status == "cancelled"
    assert result.refund_status == "failed"
    db.expire_all()
    task = db.execute(select(RefundTask)).scalars().one()
    assert task.status == "failed"
    assert task.attempts == 1
    assert task.last_error
    assert db.execute(select(SystemLog).where(SystemLog.action == "refund")).scalars().one().status == "failed"

    summary = refunds.retry_refund_tasks(db, gateway)

    assert summary == {"attempted": 1, "succeeded": 1, "failed": 0}
    db.expire_all()
    task = db.get(RefundTask, task.id)
    assert task.status == "succeeded"
    assert task.attempts == 2
    assert db.get(Booking, booking.id).stripe_refund_id == task.stripe_refund_id


def test_rejecting_a_paid_booking_refunds_in_full(db, factory, make_ctx, gateway, studio) -> None:
    staff, _ = studio
    template = factory.template(db.get(Business, staff.business_id), requires_confirmation=True, price=1500)
    instance = factory.instance(template, NOW + timedelta(hours=24))
    booking = _paid_booking(db, make_ctx(factory.user(name="Payer")), gateway, instance.id)
    assert booking.status == "awaiting_approval"

    result = refunds.reject_booking_with_refund(make_ctx(staff), gateway, booking.id, reason="private session")

    assert result.status == "rejected"
    assert result.refund_amount == 1500
    assert result.refund_status == "succeeded"
    assert gateway.refunds[0]["amount"] == 1500


def _pending_bookings(db, user_id, instance_id) -> list:
    db.expire_all()
    return db.execute(
        select(Booking).where(
            Booking.user_id == user_id, Booking.class_instance_id == instance_id, Booking.status == "pending"
        )
    ).scalars().all()


def test_credit_booking_is_refused_while_own_card_payment_is_open(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=5)
    payer = factory.user(credits=1000, name="Payer")
    intent = reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)

    with pytest.raises(ActionNotAllowedError):
        booking_service.book_class(make_ctx(payer), instance.id)
    with transaction(db):
        reservations.confirm_reservation(db, intent.payment_intent_id, NOW)

    assert len(_pending_bookings(db, payer.id, instance.id)) == 1
    assert db.get(User, payer.id).credits == 1000


def test_second_payment_intent_for_the_same_class_is_refused(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=5)
    payer = factory.user(name="Payer")
    reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)

    with pytest.raises(ActionNotAllowedError):
        reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)
    assert len(gateway.intents) == 1


def test_payment_for_an_already_booked_class_is_refunded(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=5)
    payer = factory.user(credits=1000, name="Payer")
    first = reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)

    # The first hold lapses while its payment is still in flight
    later = NOW + timedelta(minutes=20)
    booked = booking_service.book_class(make_ctx(payer, now=later), instance.id)
    with transaction(db):
        assert reservations.confirm_reservation(db, first.payment_intent_id, later, amount_received=1000) is None

    bookings = _pending_bookings(db, payer.id, instance.id)
    assert [b.id for b in bookings] == [booked.booking_id]
    assert db.get(PaymentReservation, first.reservation_id).status == "failed"
    task = db.execute(select(RefundTask)).scalars().one()
    assert (task.stripe_payment_intent_id, task.amount) == (first.payment_intent_id, 1000)
    assert db.get(ClassInstance, instance.id).booked_count == 1


def test_two_paid_intents_yield_one_booking(db, factory, make_ctx, gateway, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24), capacity=5)
    payer = factory.user(name="Payer")
    later = NOW + timedelta(minutes=20)
    first = reservations.create_class_payment_intent(make_ctx(payer), gateway, instance.id)
    second = reservations.create_class_payment_intent(make_ctx(payer, now=later), gateway, instance.id)

    with transaction(db):
        kept = reservations.confirm_reservation(db, second.payment_intent_id, later)
    with transaction(db):
        dropped = reservations.confirm_reservation(db, first.payment_intent_id, later)

    assert kept is not None
    assert dropped is None
    assert len(_pending_bookings(db, payer.id, instance.id)) == 1
    task = db.execute(select(RefundTask)).scalars().one()
    assert task.stripe_payment_intent_id == first.payment_intent_id
    assert db.get(ClassInstance, instance.id).booked_count == 1


def test_credit_cancellation_refuses_card_paid_bookings(db, factory, make_ctx, gateway, studio) -> None:
    staff, _ = studio
    template = factory.template(db.get(Business, staff.business_id), requires_confirmation=True)
    instance = factory.instance(template, NOW + timedelta(hours=24))
    payer = factory.user(name="Payer")
    booking = _paid_booking(db, make_ctx(payer), gateway, instance.id)

    with pytest.raises(ActionNotAllowedError):
        booking_service.cancel_booking(make_ctx(payer), booking.id)
    with pytest.raises(ActionNotAllowedError):
        booking_service.reject_booking(make_ctx(staff), booking.id)

    db.expire_all()
    assert db.get(Booking, booking.id).status == "awaiting_approval"
    assert db.get(ClassInstance, instance.id).booked_count == 1
