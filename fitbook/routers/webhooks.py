from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import settlement
from ..deps import get_db
from ..notifications import Notifier, get_notifier
from ..schemas import WebhookAck


# Authenticated by the Stripe-Signature header rather than the API bearer token
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    # Raw bytes are needed for the signature; settlement and email run off the event loop
    payload = await request.body()
    result = await run_in_threadpool(settlement.handle_webhook, db, payload, stripe_signature, notifier=notifier)
    return {"ok": True, "event_id": result.event_id, "event_type": result.event_type, "duplicate": result.duplicate}
