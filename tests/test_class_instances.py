from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from fitbook import booking_service, class_instance_service
from fitbook.errors import ActionNotAllowedError, UnauthorizedError, ValidationError
from fitbook.models import Booking, ClassInstance, User

from conftest import NOW


@pytest.fixture()
def studio(factory):
    business = factory.business()
    return factory.staff(business), factory.template(business)


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


def test_create_from_template_copies_defaults(make_ctx, studio) -> None:
    staff, template = studio
    start = datetime(2030, 1, 8, 18, 30)

    instance = class_instance_service.create_from_template(make_ctx(staff), template.id, start)

    assert instance.end_time == start + timedelta(minutes=60)
    assert instance.capacity == 10
    assert instance.time_pattern == "18:30-19:30"
    assert instance.day_of_week == 2
    assert instance.booked_count == 0


def test_time_change_grants_free_cancel_to_pending_bookings(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    member = factory.user(credits=1000, name="Member")
    quitter = factory.user(credits=1000, name="Quitter")
    kept = booking_service.book_class(make_ctx(member), instance.id)
    dropped = booking_service.book_class(make_ctx(quitter), instance.id)
    booking_service.cancel_booking(make_ctx(quitter), dropped.booking_id)

    new_start = NOW + timedelta(hours=3)
    result = class_instance_service.update_single(
        make_ctx(staff), instance.id, {"start_time": new_start, "end_time": new_start + timedelta(hours=1)}
    )

    assert result.bookings_affected == 1
    assert result.updated_instance_ids == [instance.id]
    booking = _reload(db, Booking, kept.booking_id)
    assert booking.has_free_cancel
    assert booking.free_cancel_reason == "Class time changed"
    assert booking.free_cancel_expires_at == NOW + timedelta(hours=48)
    assert booking.class_instance_snapshot["start_time"] == new_start.isoformat()
    assert booking.class_instance_snapshot["name"] == "Morning Yoga"
    assert not db.get(Booking, dropped.booking_id).has_free_cancel

    # Inside the late window, yet the time change makes cancellation free
    cancelled = booking_service.cancel_booking(make_ctx(member), kept.booking_id)
    assert cancelled.refund_amount == 1000
    assert _reload(db, User, member.id).credits == 1000


def test_non_time_change_does_not_touch_bookings(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    booked = booking_service.book_class(make_ctx(factory.user(credits=1000)), instance.id)

    result = class_instance_service.update_single(
        make_ctx(staff), instance.id, {"color": "#ff8800", "start_time": instance.start_time}
    )

    assert result.bookings_affected == 0
    assert _reload(db, ClassInstance, instance.id).color == "#ff8800"
    assert not db.get(Booking, booked.booking_id).has_free_cancel


def test_capacity_cannot_drop_below_booked_seats(factory, make_ctx, studio) -> None:
    staff, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    booking_service.book_class(make_ctx(factory.user(credits=1000)), instance.id)

    with pytest.raises(ValidationError):
        class_instance_service.update_single(make_ctx(staff), instance.id, {"capacity": 0})


def test_only_owning_business_can_edit(factory, make_ctx, studio) -> None:
    _, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    other_staff = factory.staff(factory.business("Other Gym"), name="Rival")

    with pytest.raises(UnauthorizedError):
        class_instance_service.update_single(make_ctx(factory.user()), instance.id, {"color": "#000000"})
    with pytest.raises(UnauthorizedError):
        class_instance_service.delete_single(make_ctx(other_staff), instance.id)


def test_series_update_moves_future_instances_on_their_own_dates(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    tuesdays = [datetime(2030, 1, 8, 9, 0) + timedelta(weeks=n) for n in range(3)]
    earlier, anchor, later = (factory.instance(template, start) for start in tuesdays)
    other_class = factory.instance(template, tuesdays[2], name="Evening Pilates")
    booked = booking_service.book_class(make_ctx(factory.user(credits=1000)), later.id)

    result = class_instance_service.update_multiple(
        make_ctx(staff), anchor.id, {"start_time": datetime(2030, 1, 15, 10, 0), "instructor": "Sam"}
    )

    assert sorted(result.updated_instance_ids) == sorted([anchor.id, later.id])
    assert result.bookings_affected == 1
    db.expire_all()
    moved = db.get(ClassInstance, later.id)
    assert moved.start_time == datetime(2030, 1, 22, 10, 0)
    assert moved.end_time == datetime(2030, 1, 22, 11, 0)
    assert moved.time_pattern == "10:00-11:00"
    assert moved.instructor == "Sam"
    assert db.get(ClassInstance, earlier.id).start_time == tuesdays[0]
    assert db.get(ClassInstance, other_class.id).start_time == tuesdays[2]
    assert db.get(Booking, booked.booking_id).has_free_cancel


def test_delete_is_refused_while_the_class_has_any_booking(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    instance = factory.instance(template, NOW + timedelta(hours=24))
    user = factory.user(credits=1000)
    booked = booking_service.book_class(make_ctx(user), instance.id)

    with pytest.raises(ActionNotAllowedError):
        class_instance_service.delete_single(make_ctx(staff), instance.id)

    booking_service.cancel_booking(make_ctx(user), booked.booking_id)
    with pytest.raises(ActionNotAllowedError):
        class_instance_service.delete_single(make_ctx(staff), instance.id)
    assert not _reload(db, ClassInstance, instance.id).deleted

    empty = factory.instance(template, NOW + timedelta(hours=48))
    assert class_instance_service.delete_single(make_ctx(staff), empty.id) == [empty.id]
    assert _reload(db, ClassInstance, empty.id).deleted


def test_delete_similar_future(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    starts = [datetime(2030, 1, 8, 9, 0) + timedelta(weeks=n) for n in range(3)]
    instances = [factory.instance(template, start) for start in starts]

    deleted = class_instance_service.delete_similar_future(make_ctx(staff), instances[1].id)

    assert sorted(deleted) == sorted([instances[1].id, instances[2].id])
    db.expire_all()
    assert not db.get(ClassInstance, instances[0].id).deleted


def test_delete_similar_future_is_refused_by_a_cancelled_booking(db, factory, make_ctx, studio) -> None:
    staff, template = studio
    starts = [datetime(2030, 1, 8, 9, 0) + timedelta(weeks=n) for n in range(3)]
    instances = [factory.instance(template, start) for start in starts]
    user = factory.user(credits=1000)
    booked = booking_service.book_class(make_ctx(user), instances[2].id)
    booking_service.cancel_booking(make_ctx(user), booked.booking_id)

    with pytest.raises(ActionNotAllowedError):
        class_instance_service.delete_similar_future(make_ctx(staff), instances[1].id)

    db.expire_all()
    assert not any(db.get(ClassInstance, i.id).deleted for i in instances)
