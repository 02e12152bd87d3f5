from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# Discount rules
class DiscountCondition(BaseModel):
    type: Literal["hours_before_min", "hours_before_max", "always"]
    hours: Optional[float] = Field(default=None, ge=0)


class DiscountValue(BaseModel):
    type: Literal["fixed_amount", "percentage"]
    value: int = Field(ge=0)


class DiscountRule(BaseModel):
    id: str
    name: str
    condition: DiscountCondition
    discount: DiscountValue
    is_active: bool = True


# Bookings
class BookClassRequest(BaseModel):
    class_instance_id: str
    description: Optional[str] = None


class BookingResultOut(BaseModel):
    booking_id: str
    transaction_id: Optional[str] = None
    status: str
    final_price: int
    created: bool = True


class BookingAction(BaseModel):
    id: str
    reason: Optional[str] = None


class CancellationOut(BaseModel):
    booking_id: str
    status: str
    refund_amount: int
    refund_percentage: int
    cancellation_fee: int
    refund_status: str


class BookingOut(BaseModel):
    id: str
    business_id: str
    user_id: str
    class_instance_id: str
    status: str
    description: Optional[str] = None
    original_price: int
    final_price: int
    credits_used: int
    applied_discount: Optional[Dict[str, Any]] = None
    credit_transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    stripe_payment_intent_id: Optional[str] = None
    has_free_cancel: bool
    free_cancel_expires_at: Optional[datetime] = None
    free_cancel_reason: Optional[str] = None
    class_instance_snapshot: Optional[Dict[str, Any]] = None
    refund_amount: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    booked_at: datetime

    model_config = dict(from_attributes=True)


class BookingsListResponse(BaseModel):
    items: List[BookingOut]
    total: int


# Class instances
class ClassInstanceCreate(BaseModel):
    template_id: str
    start_time: datetime
    price: Optional[int] = Field(default=None, ge=0)
    capacity: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = None


class ClassInstanceUpdate(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    instructor: Optional[str] = None
    color: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    price: Optional[int] = Field(default=None, ge=0)
    booking_window_min_hours: Optional[int] = Field(default=None, ge=0)
    booking_window_max_hours: Optional[int] = Field(default=None, ge=0)
    cancellation_window_hours: Optional[int] = Field(default=None, ge=0)
    discount_rules: Optional[List[DiscountRule]] = None
    requires_confirmation: Optional[bool] = None
    disable_bookings: Optional[bool] = None


class ClassInstanceOut(BaseModel):
    id: str
    business_id: str
    template_id: str
    name: str
    instructor: Optional[str] = None
    color: Optional[str] = None
    start_time: datetime
    end_time: datetime
    time_pattern: str
    day_of_week: int
    capacity: Optional[int] = None
    booked_count: int
    price: Optional[int] = None
    status: str
    deleted: bool

    model_config = dict(from_attributes=True)


class InstanceUpdateOut(BaseModel):
    updated_instance_ids: List[str]
    total_updated: int
    bookings_affected: int


class InstanceAction(BaseModel):
    id: str


class InstanceDeleteOut(BaseModel):
    deleted_instance_ids: List[str]


class DiscountPreviewOut(BaseModel):
    original_price: int
    final_price: int
    applied_discount: Optional[Dict[str, Any]] = None
    rules: List[Dict[str, Any]]


# Credits
class CreditBalanceOut(BaseModel):
    user_id: str
    balance: int
    lifetime_credits: int


class CreditTransactionOut(BaseModel):
    id: str
    amount: int
    direction: str
    type: str
    reason: Optional[str] = None
    description: Optional[str] = None
    status: str
    related_booking_id: Optional[str] = None
    created_at: datetime

    model_config = dict(from_attributes=True)


class CreditTransactionsListResponse(BaseModel):
    items: List[CreditTransactionOut]
    total: int


class GiftCreditsRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    description: Optional[str] = None


class LedgerResultOut(BaseModel):
    transaction_id: str
    new_balance: int


class ReconcileRequest(BaseModel):
    user_id: str
    update_cache: bool = False


class ReconcileOut(BaseModel):
    user_id: str
    cached_balance: int
    computed_balance: int
    difference: int
    updated: bool


class CreditCheckoutRequest(BaseModel):
    credit_amount: int


class CreditCheckoutOut(BaseModel):
    session_id: str
    url: Optional[str] = None
    transaction_id: str
    price_cents: int


# Direct payments
class ClassIntentRequest(BaseModel):
    class_instance_id: str


class ClassIntentOut(BaseModel):
    reservation_id: str
    payment_intent_id: str
    client_secret: Optional[str] = None
    ephemeral_key: Optional[str] = None
    customer_id: str
    amount: int
    original_price: int
    expires_at: datetime


class ReservationAction(BaseModel):
    id: str


class ReservationOut(BaseModel):
    id: str
    status: str
    booking_id: Optional[str] = None

    model_config = dict(from_attributes=True)


class SweepOut(BaseModel):
    expired: int


class RefundRetryOut(BaseModel):
    attempted: int
    succeeded: int
    failed: int


class SubscriptionOut(BaseModel):
    id: str
    user_id: str
    stripe_subscription_id: str
    status: str
    credit_amount: int
    price_in_cents: int
    currency: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool

    model_config = dict(from_attributes=True)


class SubscriptionAction(BaseModel):
    id: str
    credit_amount: Optional[int] = None


class SubscriptionUpdate(BaseModel):
    id: str
    credit_amount: int


class SubscriptionCheckoutRequest(BaseModel):
    credit_amount: int


class SubscriptionCheckoutOut(BaseModel):
    session_id: str
    url: Optional[str] = None
    credit_amount: int
    price_in_cents: int


class WebhookAck(BaseModel):
    ok: bool = True
    event_id: str
    event_type: str
    duplicate: bool = False
