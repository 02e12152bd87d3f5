from __future__ import annotations

"""
EMBED_SUMMARY: Credit endpoints: balance, transaction history, staff gifts, ledger reconciliation and credit checkout.
EMBED_TAGS: credits, ledger, api, purchases
"""

from fastapi import APIRouter, Depends, Query

from .. import ledger, purchases
from ..context import RequestContext
from ..database import transaction
from ..deps import get_context, require_staff, require_token
from ..payments_gateway import PaymentGateway, get_payment_gateway
from ..schemas import (
    CreditBalanceOut,
    CreditCheckoutOut,
    CreditCheckoutRequest,
    CreditTransactionsListResponse,
    GiftCreditsRequest,
    LedgerResultOut,
    ReconcileOut,
    ReconcileRequest,
)


router = APIRouter(prefix="/api", tags=["credits"], dependencies=[Depends(require_token)])


@router.get("/credits.balance", response_model=CreditBalanceOut)
def credits_balance(ctx: RequestContext = Depends(get_context)):
    return {
        "user_id": ctx.user.id,
        "balance": ledger.get_balance(ctx.db, ctx.user.id),
        "lifetime_credits": ctx.user.lifetime_credits,
    }


@router.get("/credits.transactions", response_model=CreditTransactionsListResponse)
def credits_transactions(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    ctx: RequestContext = Depends(get_context),
):
    items, total = ledger.list_transactions(ctx.db, ctx.user.id, page=page, page_size=page_size)
    return {"items": items, "total": total}


@router.post("/credits.gift", response_model=LedgerResultOut, dependencies=[Depends(require_staff)])
def credits_gift(payload: GiftCreditsRequest, ctx: RequestContext = Depends(get_context)):
    with transaction(ctx.db):
        result = ledger.add_credits(
            ctx.db,
            payload.user_id,
            payload.amount,
            "gift",
            reason="staff_gift",
            description=payload.description or f"Gift from {ctx.user.name}",
        )
    return {"transaction_id": result.transaction_id, "new_balance": result.new_balance}


@router.post("/credits.reconcile", response_model=ReconcileOut, dependencies=[Depends(require_staff)])
def credits_reconcile(payload: ReconcileRequest, ctx: RequestContext = Depends(get_context)):
    with transaction(ctx.db):
        report = ledger.reconcile_user_credits(ctx.db, payload.user_id, update_cache=payload.update_cache)
    return report


@router.post("/credits.checkout", response_model=CreditCheckoutOut)
def credits_checkout(
    payload: CreditCheckoutRequest,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return purchases.create_credit_checkout(ctx, gateway, payload.credit_amount)
