from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from . import ledger
from .config import get_settings
from .context import RequestContext
from .database import transaction
from .errors import ValidationError
from .payments_gateway import PaymentGateway
from .reservations import ensure_customer
from .utils import credits_to_cents


logger = logging.getLogger(__name__)

MIN_PURCHASE_CREDITS = 1
MAX_PURCHASE_CREDITS = 200


@dataclass(frozen=True)
class CreditCheckout:
    session_id: str
    url: Optional[str]
    transaction_id: str
    price_cents: int


def create_credit_checkout(ctx: RequestContext, gateway: PaymentGateway, credit_amount: int) -> CreditCheckout:
    """Start a hosted checkout for a one-time credit pack; credits land when the session completes."""
    if not MIN_PURCHASE_CREDITS <= credit_amount <= MAX_PURCHASE_CREDITS:
        raise ValidationError(
            f"Credit amount must be between {MIN_PURCHASE_CREDITS} and {MAX_PURCHASE_CREDITS}",
            field="credit_amount",
        )
    settings = get_settings()
    db, user = ctx.db, ctx.user
    price_cents = credit_amount * settings.credit_unit_price_cents
    with transaction(db):
        customer_id = ensure_customer(db, gateway, user)
        session = gateway.create_checkout_session(
            customer_id=customer_id,
            amount=price_cents,
            currency=settings.currency,
            product_name=f"{credit_amount} credits",
            metadata={"purchase_type": "credits", "user_id": user.id, "credit_amount": str(credit_amount)},
        )
        tx = ledger.create_pending_purchase(
            db,
            user.id,
            credits_to_cents(credit_amount, settings.cents_per_credit),
            price_cents=price_cents,
            checkout_session_id=session.id,
            description=f"Purchase of {credit_amount} credits",
        )
    logger.info("credit checkout user=%s credits=%s session=%s", user.id, credit_amount, session.id)
    return CreditCheckout(session_id=session.id, url=session.url, transaction_id=tx.id, price_cents=price_cents)
