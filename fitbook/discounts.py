from __future__ import annotations

"""
EMBED_SUMMARY: Pure discount calculator picking the cheapest applicable rule from instance and template rules.
EMBED_TAGS: pricing, discounts, rules, bookings
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .schemas import DiscountCondition, DiscountRule, DiscountValue
from .utils import hours_between


logger = logging.getLogger(__name__)

INSTANCE_RULE = "instance_rule"
TEMPLATE_RULE = "template_rule"


@dataclass(frozen=True)
class AppliedDiscount:
    source: str
    rule_id: str
    rule_name: str
    discount_type: str
    discount_value: int
    amount_saved: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DiscountResult:
    original_price: int
    final_price: int
    applied_discount: Optional[AppliedDiscount] = None


def effective_price(instance: Any, template: Any, default_price: int) -> int:
    if instance is not None and instance.price is not None:
        return int(instance.price)
    if template is not None and template.price is not None:
        return int(template.price)
    return int(default_price)


def _parse_rules(raw_rules: Optional[list], source: str) -> List[Tuple[str, DiscountRule]]:
    parsed: List[Tuple[str, DiscountRule]] = []
    for raw in raw_rules or []:
        try:
            rule = DiscountRule.model_validate(raw)
        except PydanticValidationError:
            logger.warning("Skipping malformed %s: %r", source, raw)
            continue
        parsed.append((source, rule))
    return parsed


def candidate_rules(instance: Any, template: Any) -> List[Tuple[str, DiscountRule]]:
    """Instance rules first, then template rules. Order decides ties."""
    rules = _parse_rules(getattr(instance, "discount_rules", None), INSTANCE_RULE)
    rules.extend(_parse_rules(getattr(template, "discount_rules", None), TEMPLATE_RULE))
    return rules


def condition_applies(condition: DiscountCondition, hours_until_class: float) -> bool:
    if condition.type == "always":
        return True
    if condition.hours is None:
        return False
    if condition.type == "hours_before_min":
        return hours_until_class >= condition.hours
    if condition.type == "hours_before_max":
        return 0 <= hours_until_class <= condition.hours
    return False


def discount_amount(discount: DiscountValue, price: int) -> int:
    if discount.type == "percentage":
        pct = min(discount.value, 100)
        # Half-up rounding on whole cents
        return (price * pct + 50) // 100
    return discount.value


def calculate_best_discount(
    instance: Any,
    template: Any,
    booking_time: datetime,
    default_price: int = 1000,
) -> DiscountResult:
    price = effective_price(instance, template, default_price)
    hours_until_class = hours_between(booking_time, instance.start_time)

    best_price = price
    best: Optional[AppliedDiscount] = None
    for source, rule in candidate_rules(instance, template):
        if not rule.is_active or not condition_applies(rule.condition, hours_until_class):
            continue
        final_price = max(0, price - discount_amount(rule.discount, price))
        if final_price < best_price:
            best_price = final_price
            best = AppliedDiscount(
                source=source,
                rule_id=rule.id,
                rule_name=rule.name,
                discount_type=rule.discount.type,
                discount_value=rule.discount.value,
                amount_saved=price - final_price,
            )
    return DiscountResult(original_price=price, final_price=best_price, applied_discount=best)


def list_applicable_discounts(instance: Any, template: Any, booking_time: datetime) -> List[dict]:
    hours_until_class = hours_between(booking_time, instance.start_time)
    items = []
    for source, rule in candidate_rules(instance, template):
        items.append(
            {
                "source": source,
                "rule_id": rule.id,
                "rule_name": rule.name,
                "discount_type": rule.discount.type,
                "discount_value": rule.discount.value,
                "applies": rule.is_active and condition_applies(rule.condition, hours_until_class),
            }
        )
    return items
