from __future__ import annotations

"""
EMBED_SUMMARY: Idempotent webhook settlement: subscription lifecycle, credit allocation, one-time purchases and paid seat reservations.
EMBED_TAGS: stripe, webhooks, settlement, idempotency, subscriptions, credits
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Type

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import ledger, reservations, subscriptions
from .config import get_settings
from .database import transaction
from .errors import ValidationError
from .models import SystemLog, User, WebhookEvent
from .notifications import Notifier
from .payments_gateway import verify_webhook
from .utils import credits_to_cents, utcnow
from .webhook_events import (
    CheckoutSessionCompleted,
    GatewayEventBase,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    duplicate: bool = False


@dataclass
class _Delivery:
    db: Session
    record: WebhookEvent
    now: datetime
    notices: list


class _DuplicateEvent(Exception):
    pass


def _int_meta(metadata: dict, *keys: str) -> Optional[int]:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            return int(value)
    return None


def _on_subscription_created(delivery: _Delivery, event: SubscriptionCreated) -> None:
    obj = event.data.object
    meta = obj.metadata
    user_id = meta.get("userId") or meta.get("user_id")
    credit_amount = _int_meta(meta, "creditAmount", "credit_amount")
    price_in_cents = _int_meta(meta, "priceInCents", "price_in_cents")
    if not user_id or credit_amount is None or price_in_cents is None:
        logger.warning("subscription %s created without user/credit metadata; skipping", obj.id)
        return
    sub = subscriptions.upsert_from_gateway(
        delivery.db,
        obj,
        user_id=user_id,
        credit_amount=credit_amount,
        price_in_cents=price_in_cents,
        currency=get_settings().currency,
        plan_name=meta.get("planName") or meta.get("plan_name"),
    )
    delivery.record.subscription_id = sub.id


def _on_subscription_changed(delivery: _Delivery, event) -> None:
    sub = subscriptions.sync_from_gateway(delivery.db, event.data.object)
    if sub is not None:
        delivery.record.subscription_id = sub.id


def _on_invoice_paid(delivery: _Delivery, event) -> None:
    invoice = event.data.object
    sub = subscriptions.get_by_stripe_id(delivery.db, invoice.subscription_id)
    if sub is None:
        logger.info("invoice %s has no known subscription; recorded only", invoice.id)
        return
    delivery.record.subscription_id = sub.id

    reason = invoice.billing_reason
    allocate = reason == "subscription_cycle" or (reason == "subscription_create" and sub.status == "incomplete")
    if not allocate:
        # subscription_update credits are granted by the synchronous upgrade path
        logger.info("invoice %s billing_reason=%s does not allocate credits", invoice.id, reason)
        return
    if reason == "subscription_create":
        sub.status = "active"

    amount = credits_to_cents(sub.credit_amount, get_settings().cents_per_credit)
    # Keyed by invoice: invoice.paid and invoice.payment_succeeded arrive for the same invoice
    result = ledger.add_credits(
        delivery.db,
        sub.user_id,
        amount,
        "subscription_grant",
        reason=reason,
        description=f"Subscription credits ({sub.plan_name or sub.stripe_subscription_id})",
        subscription_id=sub.id,
        idempotency_key=f"invoice:{invoice.id}:grant",
    )
    if result.applied:
        delivery.record.credits_allocated = amount
        delivery.record.credit_transaction_id = result.transaction_id
        delivery.notices.append((sub.user_id, amount, "subscription renewal"))


def _on_invoice_failed(delivery: _Delivery, event: InvoicePaymentFailed) -> None:
    invoice = event.data.object
    sub = subscriptions.get_by_stripe_id(delivery.db, invoice.subscription_id)
    if sub is None:
        return
    sub.status = "past_due"
    delivery.record.subscription_id = sub.id
    logger.warning("subscription %s payment failed (invoice %s)", sub.id, invoice.id)


def _on_checkout_completed(delivery: _Delivery, event: CheckoutSessionCompleted) -> None:
    session = event.data.object
    if session.metadata.get("purchase_type") != "credits":
        return
    pending = ledger.attach_payment_intent(delivery.db, session.id, session.payment_intent)
    if pending is None:
        logger.warning("checkout session %s has no pending purchase; skipping", session.id)
        return
    result = ledger.complete_credit_purchase(delivery.db, checkout_session_id=session.id, now=delivery.now)
    if not result.already_completed:
        delivery.record.credits_allocated = result.credits_added
        delivery.record.credit_transaction_id = result.transaction_id
        delivery.notices.append((result.user_id, result.credits_added, "credit purchase"))


def _on_payment_intent_succeeded(delivery: _Delivery, event: PaymentIntentSucceeded) -> None:
    intent = event.data.object
    reservations.confirm_reservation(
        delivery.db, intent.id, delivery.now, amount_received=intent.amount_received or intent.amount or None
    )


def _on_payment_intent_failed(delivery: _Delivery, event: PaymentIntentFailed) -> None:
    intent = event.data.object
    reservations.fail_reservation(delivery.db, intent.id)
    ledger.fail_credit_purchase(delivery.db, payment_intent_id=intent.id)


def _record_only(delivery: _Delivery, event: GatewayEventBase) -> None:
    logger.debug("webhook %s of type %s recorded without processing", event.id, event.type)


EVENT_HANDLERS: Dict[Type[GatewayEventBase], Callable[[_Delivery, GatewayEventBase], None]] = {
    SubscriptionCreated: _on_subscription_created,
    SubscriptionUpdated: _on_subscription_changed,
    SubscriptionDeleted: _on_subscription_changed,
    InvoicePaymentSucceeded: _on_invoice_paid,
    InvoicePaid: _on_invoice_paid,
    InvoicePaymentFailed: _on_invoice_failed,
    CheckoutSessionCompleted: _on_checkout_completed,
    PaymentIntentSucceeded: _on_payment_intent_succeeded,
    PaymentIntentFailed: _on_payment_intent_failed,
    UnhandledEvent: _record_only,
}


def handle_webhook(
    db: Session,
    payload: bytes,
    signature: Optional[str],
    *,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> WebhookResult:
    settings = get_settings()
    raw = verify_webhook(payload, signature, settings.stripe_webhook_secret, settings.webhook_tolerance_seconds)
    try:
        event = parse_event(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed {raw.get('type')} event") from exc

    notices: list = []
    try:
        with transaction(db):
            seen = db.execute(
                select(WebhookEvent.id).where(WebhookEvent.stripe_event_id == event.id)
            ).first()
            if seen is not None:
                raise _DuplicateEvent()
            record = WebhookEvent(
                stripe_event_id=event.id,
                event_type=event.type,
                payload=payload.decode("utf-8", errors="replace"),
            )
            db.add(record)
            try:
                db.flush()
            except IntegrityError as exc:
                # Concurrent delivery of the same event won the insert
                raise _DuplicateEvent() from exc

            handler = EVENT_HANDLERS[type(event)]
            handler(_Delivery(db=db, record=record, now=now or utcnow(), notices=notices), event)
            db.add(SystemLog(actor="stripe", action="webhook", entity="event", entity_id=event.id, status="processed", message=event.type))
    except _DuplicateEvent:
        logger.info("webhook %s (%s) already processed", event.id, event.type)
        return WebhookResult(event_id=event.id, event_type=event.type, duplicate=True)

    logger.info("webhook %s (%s) processed", event.id, event.type)
    if notifier is not None:
        for user_id, amount, reason in notices:
            user = db.get(User, user_id)
            notifier.credits_received(user.email if user else None, amount, reason)
    return WebhookResult(event_id=event.id, event_type=event.type)
