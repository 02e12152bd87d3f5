from __future__ import annotations

"""
EMBED_SUMMARY: Class instance scheduling: create from template, edit one or a recurring series, propagate time changes to bookings, guarded soft delete.
EMBED_TAGS: classes, schedule, reschedule, free-cancel, bookings
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import get_settings
from .context import RequestContext
from .database import transaction
from .errors import ActionNotAllowedError, NotFoundError, UnauthorizedError, ValidationError
from .models import Booking, ClassInstance, ClassTemplate
from .utils import calculate_new_instance_times, time_pattern_data


logger = logging.getLogger(__name__)

TIME_CHANGE_REASON = "Class time changed"

UPDATABLE_FIELDS = (
    "name",
    "description",
    "instructor",
    "color",
    "capacity",
    "price",
    "booking_window_min_hours",
    "booking_window_max_hours",
    "cancellation_window_hours",
    "discount_rules",
    "requires_confirmation",
    "disable_bookings",
)


@dataclass
class InstanceUpdateResult:
    updated_instance_ids: List[str] = field(default_factory=list)
    bookings_affected: int = 0

    @property
    def total_updated(self) -> int:
        return len(self.updated_instance_ids)


def _load_owned_instance(ctx: RequestContext, instance_id: str) -> ClassInstance:
    instance = ctx.db.get(ClassInstance, instance_id)
    if instance is None or instance.deleted:
        raise NotFoundError("Class not found", field="id")
    if not ctx.staff_of(instance.business_id):
        raise UnauthorizedError("Only the owning business can change this class")
    return instance


def create_from_template(
    ctx: RequestContext,
    template_id: str,
    start_time: datetime,
    *,
    price: Optional[int] = None,
    capacity: Optional[int] = None,
    color: Optional[str] = None,
) -> ClassInstance:
    db = ctx.db
    with transaction(db):
        template = db.get(ClassTemplate, template_id)
        if template is None or template.deleted:
            raise NotFoundError("Class template not found", field="template_id")
        if not ctx.staff_of(template.business_id):
            raise UnauthorizedError("Only the owning business can schedule this class")
        end_time = start_time + timedelta(minutes=template.duration_minutes)
        instance = ClassInstance(
            business_id=template.business_id,
            venue_id=template.venue_id,
            template_id=template.id,
            name=template.name,
            description=template.description,
            instructor=template.instructor,
            color=color,
            start_time=start_time,
            end_time=end_time,
            capacity=capacity if capacity is not None else template.capacity,
            price=price,
            booking_window_min_hours=template.booking_window_min_hours,
            booking_window_max_hours=template.booking_window_max_hours,
            cancellation_window_hours=template.cancellation_window_hours,
            booked_count=0,
            status="scheduled",
            **time_pattern_data(start_time, end_time),
        )
        db.add(instance)
        db.flush()
    logger.info("class instance created id=%s template=%s start=%s", instance.id, template_id, start_time)
    return instance


def _apply_changes(instance: ClassInstance, changes: Dict[str, Any]) -> None:
    for key, value in changes.items():
        if key not in UPDATABLE_FIELDS or value is None:
            continue
        if key == "capacity" and value < instance.booked_count:
            raise ValidationError(
                f"Capacity cannot drop below {instance.booked_count} booked seats", field="capacity"
            )
        setattr(instance, key, value)


def propagate_time_change(db: Session, instance: ClassInstance, now: datetime) -> int:
    """Grant free cancellation to every pending booking and refresh its class snapshot."""
    expires_at = now + timedelta(hours=get_settings().free_cancel_hours)
    bookings = db.execute(
        select(Booking).where(Booking.class_instance_id == instance.id, Booking.status == "pending")
    ).scalars().all()
    for booking in bookings:
        snapshot = dict(booking.class_instance_snapshot or {})
        snapshot["start_time"] = instance.start_time.isoformat()
        snapshot["end_time"] = instance.end_time.isoformat()
        booking.class_instance_snapshot = snapshot
        booking.has_free_cancel = True
        booking.free_cancel_expires_at = expires_at
        booking.free_cancel_reason = TIME_CHANGE_REASON
    if bookings:
        logger.info("time change on instance=%s granted free cancel to %s bookings", instance.id, len(bookings))
    return len(bookings)


def _reschedule(db: Session, instance: ClassInstance, start: datetime, end: datetime, now: datetime) -> int:
    if end <= start:
        raise ValidationError("End time must be after start time", field="end_time")
    if start == instance.start_time and end == instance.end_time:
        return 0
    instance.start_time = start
    instance.end_time = end
    for key, value in time_pattern_data(start, end).items():
        setattr(instance, key, value)
    return propagate_time_change(db, instance, now)


def _split_times(changes: Dict[str, Any]):
    data = dict(changes)
    return data.pop("start_time", None), data.pop("end_time", None), data


def update_single(ctx: RequestContext, instance_id: str, changes: Dict[str, Any]) -> InstanceUpdateResult:
    db = ctx.db
    new_start, new_end, fields = _split_times(changes)
    result = InstanceUpdateResult()
    with transaction(db):
        instance = _load_owned_instance(ctx, instance_id)
        _apply_changes(instance, fields)
        if new_start is not None or new_end is not None:
            result.bookings_affected = _reschedule(
                db, instance, new_start or instance.start_time, new_end or instance.end_time, ctx.now
            )
        result.updated_instance_ids.append(instance.id)
    return result


def find_similar_future_instances(db: Session, instance: ClassInstance) -> List[ClassInstance]:
    """Instances of the same recurring series from this one onwards."""
    return list(
        db.execute(
            select(ClassInstance)
            .where(
                ClassInstance.business_id == instance.business_id,
                ClassInstance.name == instance.name,
                ClassInstance.time_pattern == instance.time_pattern,
                ClassInstance.day_of_week == instance.day_of_week,
                ClassInstance.start_time >= instance.start_time,
                ClassInstance.deleted.is_(False),
            )
            .order_by(ClassInstance.start_time)
        ).scalars().all()
    )


def update_multiple(ctx: RequestContext, instance_id: str, changes: Dict[str, Any]) -> InstanceUpdateResult:
    db = ctx.db
    new_start, new_end, fields = _split_times(changes)
    result = InstanceUpdateResult()
    with transaction(db):
        original = _load_owned_instance(ctx, instance_id)
        series = find_similar_future_instances(db, original)
        for instance in series:
            _apply_changes(instance, fields)
            if new_start is not None or new_end is not None:
                start, end = calculate_new_instance_times(instance.start_time, instance.end_time, new_start, new_end)
                result.bookings_affected += _reschedule(db, instance, start, end, ctx.now)
            result.updated_instance_ids.append(instance.id)
    logger.info(
        "series update from instance=%s updated=%s bookings_affected=%s",
        instance_id,
        result.total_updated,
        result.bookings_affected,
    )
    return result


def _booking_count(db: Session, instance_ids: List[str]) -> int:
    # Any booking, cancelled or not, keeps the instance; its history references it
    return db.execute(
        select(func.count()).select_from(Booking).where(Booking.class_instance_id.in_(instance_ids))
    ).scalar_one()


def _soft_delete(instances: List[ClassInstance], now: datetime) -> List[str]:
    for instance in instances:
        instance.deleted = True
        instance.deleted_at = now
    return [instance.id for instance in instances]


def delete_single(ctx: RequestContext, instance_id: str) -> List[str]:
    db = ctx.db
    with transaction(db):
        instance = _load_owned_instance(ctx, instance_id)
        if _booking_count(db, [instance.id]):
            raise ActionNotAllowedError("Class has bookings")
        deleted = _soft_delete([instance], ctx.now)
    logger.info("class instance deleted id=%s", instance_id)
    return deleted


def delete_similar_future(ctx: RequestContext, instance_id: str) -> List[str]:
    db = ctx.db
    with transaction(db):
        original = _load_owned_instance(ctx, instance_id)
        series = find_similar_future_instances(db, original)
        booked = _booking_count(db, [i.id for i in series])
        if booked:
            raise ActionNotAllowedError(f"{booked} bookings in this series")
        deleted = _soft_delete(series, ctx.now)
    logger.info("series deleted from instance=%s count=%s", instance_id, len(deleted))
    return deleted
