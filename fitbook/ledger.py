from __future__ import annotations

"""
EMBED_SUMMARY: Credit ledger. Every balance change writes one immutable transaction in the caller's unit of work.
EMBED_TAGS: credits, ledger, balance, purchases, refunds, idempotency
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from .errors import ActionNotAllowedError, InsufficientCreditsError, NotFoundError, ValidationError
from .models import CreditTransaction, User
from .utils import utcnow


logger = logging.getLogger(__name__)

CREDIT_TYPES = ("refund", "gift", "subscription_grant", "purchase")
# Types that count towards lifetime purchased credits
LIFETIME_TYPES = ("subscription_grant", "purchase")


@dataclass(frozen=True)
class LedgerResult:
    transaction_id: str
    new_balance: int
    applied: bool = True


@dataclass(frozen=True)
class PurchaseResult:
    transaction_id: str
    user_id: str
    credits_added: int
    already_completed: bool = False


def get_balance(db: Session, user_id: str) -> int:
    balance = db.execute(select(User.credits).where(User.id == user_id)).scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User not found", field="user_id")
    return balance


def _by_idempotency_key(db: Session, key: Optional[str]) -> Optional[CreditTransaction]:
    if not key:
        return None
    return db.execute(
        select(CreditTransaction).where(CreditTransaction.idempotency_key == key)
    ).scalars().first()


def spend_credits(
    db: Session,
    user_id: str,
    amount: int,
    *,
    reason: str = "booking",
    description: Optional[str] = None,
    booking_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerResult:
    if amount <= 0:
        raise ValidationError("Spend amount must be positive", field="amount")
    existing = _by_idempotency_key(db, idempotency_key)
    if existing is not None:
        return LedgerResult(transaction_id=existing.id, new_balance=get_balance(db, user_id), applied=False)

    # Balance check and debit in one statement so concurrent spends cannot overdraw
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.credits >= amount)
        .values(credits=User.credits - amount)
    )
    if result.rowcount == 0:
        balance = get_balance(db, user_id)
        raise InsufficientCreditsError(f"Need {amount} credits, have {balance}", field="credits")

    tx = CreditTransaction(
        user_id=user_id,
        amount=amount,
        direction="spend",
        type="booking",
        reason=reason,
        description=description,
        status="completed",
        idempotency_key=idempotency_key,
        related_booking_id=booking_id,
        completed_at=utcnow(),
    )
    db.add(tx)
    db.flush()
    new_balance = get_balance(db, user_id)
    logger.info("ledger spend user=%s amount=%s balance=%s tx=%s", user_id, amount, new_balance, tx.id)
    return LedgerResult(transaction_id=tx.id, new_balance=new_balance)


def _credit_user(db: Session, user_id: str, amount: int, tx_type: str) -> None:
    values = {"credits": User.credits + amount}
    if tx_type in LIFETIME_TYPES:
        values["lifetime_credits"] = User.lifetime_credits + amount
    result = db.execute(update(User).where(User.id == user_id).values(**values))
    if result.rowcount == 0:
        raise NotFoundError("User not found", field="user_id")


def add_credits(
    db: Session,
    user_id: str,
    amount: int,
    tx_type: str,
    *,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    booking_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerResult:
    if tx_type not in CREDIT_TYPES:
        raise ValidationError(f"Unknown credit type {tx_type}", field="type")
    if amount < 0:
        raise ValidationError("Credit amount must not be negative", field="amount")
    existing = _by_idempotency_key(db, idempotency_key)
    if existing is not None:
        return LedgerResult(transaction_id=existing.id, new_balance=get_balance(db, user_id), applied=False)

    _credit_user(db, user_id, amount, tx_type)
    tx = CreditTransaction(
        user_id=user_id,
        amount=amount,
        direction="credit",
        type=tx_type,
        reason=reason,
        description=description,
        status="completed",
        idempotency_key=idempotency_key,
        related_booking_id=booking_id,
        related_subscription_id=subscription_id,
        completed_at=utcnow(),
    )
    db.add(tx)
    db.flush()
    new_balance = get_balance(db, user_id)
    logger.info("ledger credit user=%s type=%s amount=%s balance=%s tx=%s", user_id, tx_type, amount, new_balance, tx.id)
    return LedgerResult(transaction_id=tx.id, new_balance=new_balance)


def create_pending_purchase(
    db: Session,
    user_id: str,
    amount: int,
    *,
    price_cents: int,
    checkout_session_id: str,
    description: Optional[str] = None,
) -> CreditTransaction:
    tx = CreditTransaction(
        user_id=user_id,
        amount=amount,
        direction="credit",
        type="purchase",
        reason="one_time_purchase",
        description=description,
        status="pending",
        idempotency_key=f"checkout:{checkout_session_id}",
        stripe_checkout_session_id=checkout_session_id,
        price_cents=price_cents,
    )
    db.add(tx)
    db.flush()
    return tx


def _pending_purchase(
    db: Session, payment_intent_id: Optional[str] = None, checkout_session_id: Optional[str] = None
) -> Optional[CreditTransaction]:
    stmt = select(CreditTransaction).where(CreditTransaction.type == "purchase")
    if checkout_session_id:
        stmt = stmt.where(CreditTransaction.stripe_checkout_session_id == checkout_session_id)
    elif payment_intent_id:
        stmt = stmt.where(CreditTransaction.stripe_payment_intent_id == payment_intent_id)
    else:
        return None
    return db.execute(stmt).scalars().first()


def attach_payment_intent(
    db: Session, checkout_session_id: str, payment_intent_id: Optional[str]
) -> Optional[CreditTransaction]:
    tx = _pending_purchase(db, checkout_session_id=checkout_session_id)
    if tx is None:
        return None
    if payment_intent_id and not tx.stripe_payment_intent_id:
        tx.stripe_payment_intent_id = payment_intent_id
        db.flush()
    return tx


def complete_credit_purchase(
    db: Session,
    *,
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseResult:
    """Move a pending purchase to completed and credit the user, exactly once."""
    tx = _pending_purchase(db, payment_intent_id=payment_intent_id, checkout_session_id=checkout_session_id)
    if tx is None:
        raise NotFoundError("Pending purchase not found", field="payment_intent_id")

    flipped = db.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == tx.id, CreditTransaction.status == "pending")
        .values(status="completed", completed_at=now or utcnow())
    )
    if flipped.rowcount == 0:
        db.refresh(tx)
        if tx.status == "completed":
            logger.info("ledger purchase %s already completed", tx.id)
            return PurchaseResult(transaction_id=tx.id, user_id=tx.user_id, credits_added=0, already_completed=True)
        raise ActionNotAllowedError(f"Purchase is {tx.status}", field="status")

    _credit_user(db, tx.user_id, tx.amount, "purchase")
    db.flush()
    logger.info("ledger purchase completed user=%s amount=%s tx=%s", tx.user_id, tx.amount, tx.id)
    return PurchaseResult(transaction_id=tx.id, user_id=tx.user_id, credits_added=tx.amount)


def fail_credit_purchase(
    db: Session, *, payment_intent_id: Optional[str] = None, checkout_session_id: Optional[str] = None
) -> bool:
    tx = _pending_purchase(db, payment_intent_id=payment_intent_id, checkout_session_id=checkout_session_id)
    if tx is None:
        return False
    result = db.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == tx.id, CreditTransaction.status == "pending")
        .values(status="failed")
    )
    return result.rowcount > 0


def compute_balance(db: Session, user_id: str) -> int:
    signed = case((CreditTransaction.direction == "spend", -CreditTransaction.amount), else_=CreditTransaction.amount)
    total = db.execute(
        select(func.coalesce(func.sum(signed), 0)).where(
            CreditTransaction.user_id == user_id, CreditTransaction.status == "completed"
        )
    ).scalar_one()
    return int(total)


def reconcile_user_credits(db: Session, user_id: str, update_cache: bool = False) -> dict:
    cached = get_balance(db, user_id)
    computed = compute_balance(db, user_id)
    updated = False
    if cached != computed:
        logger.warning("ledger drift user=%s cached=%s computed=%s", user_id, cached, computed)
        if update_cache:
            db.execute(update(User).where(User.id == user_id).values(credits=computed))
            updated = True
    return {
        "user_id": user_id,
        "cached_balance": cached,
        "computed_balance": computed,
        "difference": cached - computed,
        "updated": updated,
    }


def list_transactions(db: Session, user_id: str, page: int = 1, page_size: int = 50) -> Tuple[List[CreditTransaction], int]:
    base = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    items = db.execute(
        base.order_by(CreditTransaction.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    ).scalars().all()
    return list(items), total
