from __future__ import annotations

"""
EMBED_SUMMARY: Core data models for businesses, class schedules, bookings, the credit ledger and payment settlement.
EMBED_TAGS: models, bookings, credits, ledger, subscriptions, payments, schema
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


ACTIVE_BOOKING_STATUSES = ("pending", "awaiting_approval")


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Venue(Base):
    __tablename__ = "venues"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class User(Base):
    __tablename__ = "users"
    """
    EMBED_SUMMARY: Consumer or business staff account. `credits` is a cached balance maintained by the ledger.
    EMBED_TAGS: users, credits, balance, stripe
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    # Set for staff members of a business
    business_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),)


class ClassTemplate(Base):
    __tablename__ = "class_templates"
    """
    EMBED_SUMMARY: Reusable class definition supplying defaults (price, capacity, windows, discounts) to instances.
    EMBED_TAGS: classes, templates, catalog
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("venues.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instructor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_window_min_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_window_max_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cancellation_window_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discount_rules: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    requires_confirmation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ClassInstance(Base):
    __tablename__ = "class_instances"
    """
    EMBED_SUMMARY: A scheduled occurrence of a class. Nullable fields fall back to the template.
    EMBED_TAGS: classes, schedule, capacity, pricing, discounts
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("venues.id"), nullable=True)
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("class_templates.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instructor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    time_pattern: Mapped[str] = mapped_column(String(16), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_window_min_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_window_max_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cancellation_window_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discount_rules: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="scheduled", nullable=False)
    requires_confirmation: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    disable_bookings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_instance_end_after_start"),
        CheckConstraint("booked_count >= 0", name="ck_instance_booked_count_non_negative"),
        Index("ix_instance_series", "business_id", "name", "time_pattern", "day_of_week"),
    )


class Booking(Base):
    __tablename__ = "bookings"
    """
    EMBED_SUMMARY: A user's reservation of a class instance with price snapshot, refund and free-cancel state.
    EMBED_TAGS: bookings, cancellations, refunds, snapshots
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    class_instance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("class_instances.id"), nullable=False, index=True
    )
    # pending|awaiting_approval|completed|cancelled|no_show|rejected
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    applied_discount: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    credit_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paid_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    has_free_cancel: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    free_cancel_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    free_cancel_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    class_instance_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    user_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    refund_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    booked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_booking_user_instance_status", "user_id", "class_instance_id", "status"),
        CheckConstraint("final_price >= 0", name="ck_booking_final_price_non_negative"),
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    """
    EMBED_SUMMARY: Immutable credit ledger entry. Completed rows sum to the user's cached balance.
    EMBED_TAGS: credits, ledger, purchases, refunds, idempotency
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    # spend|credit
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    # booking|refund|gift|subscription_grant|purchase
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # pending|completed|failed, only purchases are ever pending
    status: Mapped[str] = mapped_column(String(16), default="completed", nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    related_booking_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    related_subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    stripe_checkout_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (CheckConstraint("amount >= 0", name="ck_credit_tx_amount_non_negative"),)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stripe_subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # incomplete|active|past_due|canceled|...
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    plan_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    credit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="eur", nullable=False)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    """
    EMBED_SUMMARY: One row per processed gateway event; the unique event id makes redelivery a no-op.
    EMBED_TAGS: stripe, webhooks, idempotency, audit
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    credits_allocated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credit_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


class PaymentReservation(Base):
    __tablename__ = "payment_reservations"
    """
    EMBED_SUMMARY: Short-lived seat hold while a direct card payment for a class is in flight.
    EMBED_TAGS: payments, reservations, capacity, stripe
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    class_instance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("class_instances.id"), nullable=False, index=True
    )
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    original_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_discount: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # pending|confirmed|cancelled|failed|expired
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    booking_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RefundTask(Base):
    __tablename__ = "refund_tasks"
    """
    EMBED_SUMMARY: Durable record of a gateway refund owed for a booking; retried until it succeeds.
    EMBED_TAGS: refunds, stripe, reconciliation, outbox
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # pending|succeeded|failed
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SystemLog(Base):
    __tablename__ = "system_log"
    """
    EMBED_SUMMARY: Append-only application log for external integrations and actions.
    EMBED_TAGS: logs, audit, integrations
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
