from __future__ import annotations

"""
EMBED_SUMMARY: Booking endpoints: book with credits, cancel (credit or card refund), check-in, no-show, approval flow.
EMBED_TAGS: bookings, api, cancellations, refunds
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .. import booking_service, refunds
from ..context import RequestContext
from ..deps import get_context, require_token
from ..payments_gateway import PaymentGateway, get_payment_gateway
from ..schemas import (
    BookClassRequest,
    BookingAction,
    BookingOut,
    BookingResultOut,
    BookingsListResponse,
    CancellationOut,
)


router = APIRouter(prefix="/api", tags=["bookings"], dependencies=[Depends(require_token)])


@router.post("/bookings.book", response_model=BookingResultOut)
def bookings_book(payload: BookClassRequest, ctx: RequestContext = Depends(get_context)):
    return booking_service.book_class(ctx, payload.class_instance_id, description=payload.description)


@router.post("/bookings.cancel", response_model=CancellationOut)
def bookings_cancel(
    payload: BookingAction,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = booking_service.get_booking(ctx, payload.id)
    if booking.paid_amount:
        return refunds.cancel_booking_with_refund(ctx, gateway, payload.id, reason=payload.reason)
    return booking_service.cancel_booking(ctx, payload.id, reason=payload.reason)


@router.post("/bookings.complete", response_model=BookingOut)
def bookings_complete(payload: BookingAction, ctx: RequestContext = Depends(get_context)):
    return booking_service.complete_booking(ctx, payload.id)


@router.post("/bookings.noShow", response_model=BookingOut)
def bookings_no_show(payload: BookingAction, ctx: RequestContext = Depends(get_context)):
    return booking_service.mark_no_show(ctx, payload.id)


@router.post("/bookings.approve", response_model=BookingOut)
def bookings_approve(payload: BookingAction, ctx: RequestContext = Depends(get_context)):
    return booking_service.approve_booking(ctx, payload.id)


@router.post("/bookings.reject", response_model=CancellationOut)
def bookings_reject(
    payload: BookingAction,
    ctx: RequestContext = Depends(get_context),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    booking = booking_service.get_booking(ctx, payload.id)
    if booking.paid_amount:
        return refunds.reject_booking_with_refund(ctx, gateway, payload.id, reason=payload.reason)
    return booking_service.reject_booking(ctx, payload.id, reason=payload.reason)


@router.get("/bookings.get", response_model=BookingOut)
def bookings_get(id: str, ctx: RequestContext = Depends(get_context)):
    return booking_service.get_booking(ctx, id)


@router.get("/bookings.list", response_model=BookingsListResponse)
def bookings_list(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    status: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
):
    items, total = booking_service.list_user_bookings(ctx.db, ctx.user.id, status=status, page=page, page_size=page_size)
    return {"items": items, "total": total}
