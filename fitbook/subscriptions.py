from __future__ import annotations

"""
EMBED_SUMMARY: Local mirror of gateway subscriptions: checkout start, webhook upserts, plan changes, cancel and reactivate.
EMBED_TAGS: subscriptions, stripe, credits, billing, pricing
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import ledger
from .config import get_settings
from .context import RequestContext
from .database import transaction
from .errors import ActionNotAllowedError, NotFoundError, PaymentGatewayError, UnauthorizedError, ValidationError
from .models import Subscription, SystemLog
from .payments_gateway import PaymentGateway
from .reservations import ensure_customer
from .utils import credits_to_cents
from .webhook_events import SubscriptionObject


logger = logging.getLogger(__name__)

MIN_SUBSCRIPTION_CREDITS = 5
MAX_SUBSCRIPTION_CREDITS = 500
SUBSCRIPTION_CREDIT_STEP = 5
# (minimum credits, percent off), highest tier first
VOLUME_DISCOUNTS = ((450, 10), (300, 7), (200, 5), (100, 3))
LIVE_STATUSES = ("active", "trialing", "past_due")


@dataclass(frozen=True)
class SubscriptionPricing:
    credit_amount: int
    price_in_cents: int
    discount_percent: int

    @property
    def plan_name(self) -> str:
        return f"Monthly Subscription - {self.credit_amount} Credits"


@dataclass(frozen=True)
class SubscriptionCheckout:
    session_id: str
    url: Optional[str]
    credit_amount: int
    price_in_cents: int


def subscription_pricing(credit_amount: int) -> SubscriptionPricing:
    """Monthly price for a credit amount, with volume tiers starting at 100 credits."""
    if (
        credit_amount < MIN_SUBSCRIPTION_CREDITS
        or credit_amount > MAX_SUBSCRIPTION_CREDITS
        or credit_amount % SUBSCRIPTION_CREDIT_STEP
    ):
        raise ValidationError(
            f"Credit amount must be {MIN_SUBSCRIPTION_CREDITS}-{MAX_SUBSCRIPTION_CREDITS} "
            f"in steps of {SUBSCRIPTION_CREDIT_STEP}",
            field="credit_amount",
        )
    discount = next((pct for floor, pct in VOLUME_DISCOUNTS if credit_amount >= floor), 0)
    base = credit_amount * get_settings().subscription_credit_price_cents
    return SubscriptionPricing(
        credit_amount=credit_amount,
        price_in_cents=(base * (100 - discount) + 50) // 100,
        discount_percent=discount,
    )


def _plan_metadata(user_id: str, pricing: SubscriptionPricing) -> Dict[str, str]:
    return {
        "purchase_type": "subscription",
        "user_id": user_id,
        "credit_amount": str(pricing.credit_amount),
        "price_in_cents": str(pricing.price_in_cents),
        "plan_name": pricing.plan_name,
    }


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def get_by_stripe_id(db: Session, stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    ).scalars().first()


def _copy_gateway_state(sub: Subscription, obj: SubscriptionObject) -> None:
    sub.status = obj.status
    sub.cancel_at_period_end = obj.cancel_at_period_end
    if obj.current_period_start is not None:
        sub.current_period_start = _ts(obj.current_period_start)
    if obj.current_period_end is not None:
        sub.current_period_end = _ts(obj.current_period_end)
    if obj.canceled_at is not None:
        sub.canceled_at = _ts(obj.canceled_at)
    if obj.ended_at is not None:
        sub.ended_at = _ts(obj.ended_at)


def upsert_from_gateway(
    db: Session,
    obj: SubscriptionObject,
    *,
    user_id: str,
    credit_amount: int,
    price_in_cents: int,
    currency: str,
    plan_name: Optional[str] = None,
) -> Subscription:
    sub = get_by_stripe_id(db, obj.id)
    if sub is None:
        sub = Subscription(
            user_id=user_id,
            stripe_subscription_id=obj.id,
            stripe_customer_id=obj.customer,
            status=obj.status,
            credit_amount=credit_amount,
            price_in_cents=price_in_cents,
            currency=currency,
            plan_name=plan_name,
        )
        db.add(sub)
    _copy_gateway_state(sub, obj)
    db.flush()
    return sub


def sync_from_gateway(db: Session, obj: SubscriptionObject) -> Optional[Subscription]:
    sub = get_by_stripe_id(db, obj.id)
    if sub is None:
        logger.warning("subscription %s not found locally; skipping update", obj.id)
        return None
    _copy_gateway_state(sub, obj)
    return sub


def get_user_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    return db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status != "canceled")
        .order_by(Subscription.created_at.desc())
    ).scalars().first()


def _owned(ctx: RequestContext, subscription_id: str) -> Subscription:
    sub = ctx.db.get(Subscription, subscription_id)
    if sub is None:
        raise NotFoundError("Subscription not found", field="id")
    if sub.user_id != ctx.user.id:
        raise UnauthorizedError("Not your subscription")
    return sub


def cancel_subscription(ctx: RequestContext, gateway: PaymentGateway, subscription_id: str) -> Subscription:
    db = ctx.db
    with transaction(db):
        sub = _owned(ctx, subscription_id)
        if sub.status not in ("active", "trialing", "past_due"):
            raise ActionNotAllowedError(f"Subscription is {sub.status}", field="status")
        if not sub.cancel_at_period_end:
            gateway.set_cancel_at_period_end(sub.stripe_subscription_id, True)
            sub.cancel_at_period_end = True
    logger.info("subscription %s set to cancel at period end", sub.id)
    return sub


def start_subscription_checkout(ctx: RequestContext, gateway: PaymentGateway, credit_amount: int) -> SubscriptionCheckout:
    """Hosted checkout for a monthly plan; the subscription row appears when the gateway reports it."""
    pricing = subscription_pricing(credit_amount)
    db, user = ctx.db, ctx.user
    with transaction(db):
        current = get_user_subscription(db, user.id)
        if current is not None and current.status in LIVE_STATUSES:
            raise ActionNotAllowedError("You already have a subscription", field="credit_amount")
        customer_id = ensure_customer(db, gateway, user)
        session = gateway.create_subscription_checkout(
            customer_id=customer_id,
            amount=pricing.price_in_cents,
            currency=get_settings().currency,
            product_name=pricing.plan_name,
            metadata=_plan_metadata(user.id, pricing),
        )
    logger.info("subscription checkout user=%s credits=%s session=%s", user.id, credit_amount, session.id)
    return SubscriptionCheckout(
        session_id=session.id,
        url=session.url,
        credit_amount=pricing.credit_amount,
        price_in_cents=pricing.price_in_cents,
    )


def _apply_plan(sub: Subscription, pricing: SubscriptionPricing) -> None:
    sub.credit_amount = pricing.credit_amount
    sub.price_in_cents = pricing.price_in_cents
    sub.plan_name = pricing.plan_name


def update_subscription(
    ctx: RequestContext, gateway: PaymentGateway, subscription_id: str, credit_amount: int
) -> Subscription:
    """Change the monthly credit amount from the next billing cycle; nothing is charged or granted now."""
    pricing = subscription_pricing(credit_amount)
    db = ctx.db
    with transaction(db):
        sub = _owned(ctx, subscription_id)
        if sub.status != "active":
            raise ActionNotAllowedError("No active subscription to update", field="status")
        if sub.credit_amount == pricing.credit_amount:
            raise ActionNotAllowedError("Subscription already has this credit amount", field="credit_amount")
        previous = sub.credit_amount
        gateway.change_subscription_price(
            sub.stripe_subscription_id,
            amount=pricing.price_in_cents,
            currency=sub.currency,
            product_name=pricing.plan_name,
            metadata=_plan_metadata(sub.user_id, pricing),
        )
        _apply_plan(sub, pricing)
        db.add(
            SystemLog(
                actor=ctx.user.id,
                action="subscription_update",
                entity="subscription",
                entity_id=sub.id,
                status="ok",
                message=f"{previous} -> {pricing.credit_amount} credits",
            )
        )
    logger.info("subscription %s changed to %s credits", sub.id, pricing.credit_amount)
    return sub


def _period_over(sub: Subscription, now: datetime) -> bool:
    if sub.status == "canceled":
        return True
    return sub.current_period_end is not None and sub.current_period_end < now


def reactivate_subscription(
    ctx: RequestContext, gateway: PaymentGateway, subscription_id: str, credit_amount: Optional[int] = None
) -> Subscription:
    """Undo a scheduled cancellation.

    Inside the paid period the plan is simply re-enabled, optionally at a new credit amount from the next
    cycle. Once the period is over a fresh subscription is started and charged now, and its first credits
    are granted immediately. Returns the subscription that is live afterwards.
    """
    db, now = ctx.db, ctx.now
    sub = _owned(ctx, subscription_id)
    if not (sub.cancel_at_period_end or sub.status == "canceled"):
        raise ActionNotAllowedError("Only cancelled subscriptions can be reactivated", field="status")
    pricing = subscription_pricing(credit_amount if credit_amount is not None else sub.credit_amount)

    if not _period_over(sub, now):
        with transaction(db):
            if pricing.credit_amount != sub.credit_amount:
                gateway.change_subscription_price(
                    sub.stripe_subscription_id,
                    amount=pricing.price_in_cents,
                    currency=sub.currency,
                    product_name=pricing.plan_name,
                    metadata=_plan_metadata(sub.user_id, pricing),
                    cancel_at_period_end=False,
                )
                _apply_plan(sub, pricing)
            else:
                gateway.set_cancel_at_period_end(sub.stripe_subscription_id, False)
            sub.cancel_at_period_end = False
        logger.info("subscription %s reactivated credits=%s", sub.id, sub.credit_amount)
        return sub

    return _restart(ctx, gateway, sub, pricing)


def _restart(ctx: RequestContext, gateway: PaymentGateway, old: Subscription, pricing: SubscriptionPricing) -> Subscription:
    db, now = ctx.db, ctx.now
    settings = get_settings()
    if old.status != "canceled":
        gateway.cancel_subscription_now(old.stripe_subscription_id)
    started = gateway.create_subscription(
        customer_id=old.stripe_customer_id or ensure_customer(db, gateway, ctx.user),
        amount=pricing.price_in_cents,
        currency=old.currency,
        product_name=pricing.plan_name,
        metadata=_plan_metadata(old.user_id, pricing),
    )
    with transaction(db):
        old.status = "canceled"
        old.cancel_at_period_end = False
        old.ended_at = old.ended_at or now
        fresh = None
        if started.status == "active":
            fresh = Subscription(
                user_id=old.user_id,
                stripe_customer_id=old.stripe_customer_id,
                stripe_subscription_id=started.id,
                status="active",
                credit_amount=pricing.credit_amount,
                price_in_cents=pricing.price_in_cents,
                currency=old.currency,
                plan_name=pricing.plan_name,
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
            )
            db.add(fresh)
            db.flush()
            ledger.add_credits(
                db,
                fresh.user_id,
                credits_to_cents(pricing.credit_amount, settings.cents_per_credit),
                "subscription_grant",
                reason="subscription_restart",
                description=f"New subscription ({pricing.plan_name})",
                subscription_id=fresh.id,
                idempotency_key=f"subscription:{started.id}:start",
            )
    if fresh is None:
        logger.warning("restart of subscription %s left %s unpaid", old.id, started.id)
        raise PaymentGatewayError("Payment failed, update your payment method and try again")
    logger.info("subscription %s restarted as %s credits=%s", old.id, fresh.id, fresh.credit_amount)
    return fresh
