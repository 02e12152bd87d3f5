from __future__ import annotations

"""
EMBED_SUMMARY: Class instance scheduling endpoints including series edits and discount preview.
EMBED_TAGS: classes, schedule, api, discounts
"""

from fastapi import APIRouter, Depends

from .. import class_instance_service
from ..booking_service import load_bookable_instance
from ..config import get_settings
from ..context import RequestContext
from ..deps import get_context, require_token
from ..discounts import calculate_best_discount, list_applicable_discounts
from ..schemas import (
    ClassInstanceCreate,
    ClassInstanceOut,
    ClassInstanceUpdate,
    DiscountPreviewOut,
    InstanceAction,
    InstanceDeleteOut,
    InstanceUpdateOut,
)
from ..utils import as_naive_utc


router = APIRouter(prefix="/api", tags=["class_instances"], dependencies=[Depends(require_token)])


def _changes(payload: ClassInstanceUpdate) -> dict:
    changes = payload.model_dump(exclude_unset=True, exclude={"id"})
    for key in ("start_time", "end_time"):
        if key in changes:
            changes[key] = as_naive_utc(changes[key])
    return changes


def _update_out(result: class_instance_service.InstanceUpdateResult) -> dict:
    return {
        "updated_instance_ids": result.updated_instance_ids,
        "total_updated": result.total_updated,
        "bookings_affected": result.bookings_affected,
    }


@router.post("/classInstances.create", response_model=ClassInstanceOut)
def class_instances_create(payload: ClassInstanceCreate, ctx: RequestContext = Depends(get_context)):
    return class_instance_service.create_from_template(
        ctx,
        payload.template_id,
        as_naive_utc(payload.start_time),
        price=payload.price,
        capacity=payload.capacity,
        color=payload.color,
    )


@router.post("/classInstances.update", response_model=InstanceUpdateOut)
def class_instances_update(payload: ClassInstanceUpdate, ctx: RequestContext = Depends(get_context)):
    return _update_out(class_instance_service.update_single(ctx, payload.id, _changes(payload)))


@router.post("/classInstances.updateMultiple", response_model=InstanceUpdateOut)
def class_instances_update_multiple(payload: ClassInstanceUpdate, ctx: RequestContext = Depends(get_context)):
    return _update_out(class_instance_service.update_multiple(ctx, payload.id, _changes(payload)))


@router.post("/classInstances.delete", response_model=InstanceDeleteOut)
def class_instances_delete(payload: InstanceAction, ctx: RequestContext = Depends(get_context)):
    return {"deleted_instance_ids": class_instance_service.delete_single(ctx, payload.id)}


@router.post("/classInstances.deleteSimilarFuture", response_model=InstanceDeleteOut)
def class_instances_delete_similar_future(payload: InstanceAction, ctx: RequestContext = Depends(get_context)):
    return {"deleted_instance_ids": class_instance_service.delete_similar_future(ctx, payload.id)}


@router.get("/classInstances.discounts", response_model=DiscountPreviewOut)
def class_instances_discounts(id: str, ctx: RequestContext = Depends(get_context)):
    instance, template = load_bookable_instance(ctx.db, id)
    pricing = calculate_best_discount(
        instance, template, ctx.now, default_price=get_settings().default_class_price_cents
    )
    return {
        "original_price": pricing.original_price,
        "final_price": pricing.final_price,
        "applied_discount": pricing.applied_discount.to_dict() if pricing.applied_discount else None,
        "rules": list_applicable_discounts(instance, template, ctx.now),
    }
