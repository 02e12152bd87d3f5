from __future__ import annotations

"""
EMBED_SUMMARY: Direct card payment endpoints for classes, refund retries, reservation sweeps and subscription management.
EMBED_TAGS: payments, stripe, reservations, refunds, subscriptions, api
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import refunds, reservations, subscriptions
from ..context import RequestContext
from ..deps import get_context, get_db, require_staff, require_token
from ..errors import NotFoundError
from ..payments_gateway import PaymentGateway, get_payment_gateway
from ..schemas import (
    ClassIntentOut,
    ClassIntentRequest,
    RefundRetryOut,
    ReservationAction,
    ReservationOut,
    SubscriptionAction,
    SubscriptionCheckoutOut,
    SubscriptionCheckoutRequest,
    SubscriptionOut,
    SubscriptionUpdate,
    SweepOut,
)
from ..utils import utcnow


router = APIRouter(prefix="/api", tags=["payments"], dependencies=[Depends(require_token)])


@router.post("/payments.classIntent.create", response_model=ClassIntentOut)
def payments_class_intent_create(
    payload: ClassIntentRequest,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return reservations.create_class_payment_intent(ctx, gateway, payload.class_instance_id)


@router.post("/payments.classIntent.cancel", response_model=ReservationOut)
def payments_class_intent_cancel(
    payload: ReservationAction,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return reservations.cancel_class_payment_intent(ctx, gateway, payload.id)


@router.post("/reservations.expire", response_model=SweepOut, dependencies=[Depends(require_staff)])
def reservations_expire(db: Session = Depends(get_db)):
    return {"expired": reservations.expire_reservations(db, utcnow())}


@router.post("/refunds.retry", response_model=RefundRetryOut, dependencies=[Depends(require_staff)])
def refunds_retry(db: Session = Depends(get_db), gateway: PaymentGateway = Depends(get_payment_gateway)):
    return refunds.retry_refund_tasks(db, gateway)


@router.get("/subscriptions.get", response_model=SubscriptionOut)
def subscriptions_get(ctx: RequestContext = Depends(get_context)):
    sub = subscriptions.get_user_subscription(ctx.db, ctx.user.id)
    if sub is None:
        raise NotFoundError("No active subscription")
    return sub


@router.post("/subscriptions.checkout", response_model=SubscriptionCheckoutOut)
def subscriptions_checkout(
    payload: SubscriptionCheckoutRequest,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return subscriptions.start_subscription_checkout(ctx, gateway, payload.credit_amount)


@router.post("/subscriptions.update", response_model=SubscriptionOut)
def subscriptions_update(
    payload: SubscriptionUpdate,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return subscriptions.update_subscription(ctx, gateway, payload.id, payload.credit_amount)


@router.post("/subscriptions.cancel", response_model=SubscriptionOut)
def subscriptions_cancel(
    payload: SubscriptionAction,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return subscriptions.cancel_subscription(ctx, gateway, payload.id)


@router.post("/subscriptions.reactivate", response_model=SubscriptionOut)
def subscriptions_reactivate(
    payload: SubscriptionAction,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return subscriptions.reactivate_subscription(ctx, gateway, payload.id, payload.credit_amount)
