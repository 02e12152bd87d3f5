from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace

from fitbook.discounts import calculate_best_discount, list_applicable_discounts


NOW = datetime(2030, 1, 7, 9, 0)


def _rule(rule_id: str, value: int, condition: str = "always", hours=None, kind: str = "fixed_amount", active=True):
    return {
        "id": rule_id,
        "name": f"rule {rule_id}",
        "condition": {"type": condition, "hours": hours},
        "discount": {"type": kind, "value": value},
        "is_active": active,
    }


def _instance(price=None, rules=None, hours_ahead: float = 24):
    return SimpleNamespace(price=price, discount_rules=rules, start_time=NOW + timedelta(hours=hours_ahead))


def _template(price=None, rules=None):
    return SimpleNamespace(price=price, discount_rules=rules)


def test_lowest_final_price_wins() -> None:
    result = calculate_best_discount(
        _instance(price=100, rules=[_rule("a", 20), _rule("b", 30)]), _template(), NOW
    )
    assert result.original_price == 100
    assert result.final_price == 70
    assert result.applied_discount.rule_id == "b"
    assert result.applied_discount.amount_saved == 30


def test_instance_rule_wins_a_tie_over_template_rule() -> None:
    result = calculate_best_discount(
        _instance(price=1000, rules=[_rule("inst", 300)]),
        _template(rules=[_rule("tmpl", 300)]),
        NOW,
    )
    assert result.final_price == 700
    assert result.applied_discount.source == "instance_rule"
    assert result.applied_discount.rule_id == "inst"


def test_template_rule_used_when_cheaper() -> None:
    result = calculate_best_discount(
        _instance(price=1000, rules=[_rule("inst", 100)]),
        _template(rules=[_rule("tmpl", 250)]),
        NOW,
    )
    assert result.final_price == 750
    assert result.applied_discount.source == "template_rule"


def test_final_price_is_clamped_at_zero() -> None:
    result = calculate_best_discount(_instance(price=1000, rules=[_rule("big", 5000)]), _template(), NOW)
    assert result.final_price == 0
    assert result.applied_discount.amount_saved == 1000


def test_price_falls_back_to_template_then_default() -> None:
    assert calculate_best_discount(_instance(), _template(price=1500), NOW).original_price == 1500
    assert calculate_best_discount(_instance(), _template(), NOW, default_price=1000).original_price == 1000


def test_early_bird_and_last_minute_windows() -> None:
    early_bird = _rule("early", 200, condition="hours_before_min", hours=48)
    last_minute = _rule("late", 300, condition="hours_before_max", hours=6)

    far_out = calculate_best_discount(_instance(price=1000, rules=[early_bird, last_minute], hours_ahead=72), _template(), NOW)
    assert far_out.final_price == 800

    soon = calculate_best_discount(_instance(price=1000, rules=[early_bird, last_minute], hours_ahead=3), _template(), NOW)
    assert soon.final_price == 700

    middle = calculate_best_discount(_instance(price=1000, rules=[early_bird, last_minute], hours_ahead=24), _template(), NOW)
    assert middle.final_price == 1000
    assert middle.applied_discount is None


def test_percentage_discount_rounds_half_up() -> None:
    result = calculate_best_discount(
        _instance(price=999, rules=[_rule("pct", 15, kind="percentage")]), _template(), NOW
    )
    # 15% of 999 = 149.85
    assert result.final_price == 849


def test_inactive_and_malformed_rules_are_ignored() -> None:
    rules = [_rule("off", 500, active=False), {"id": "broken", "discount": {"type": "fixed_amount"}}]
    result = calculate_best_discount(_instance(price=1000, rules=rules), _template(), NOW)
    assert result.final_price == 1000
    assert result.applied_discount is None


def test_list_applicable_discounts_flags_each_rule() -> None:
    items = list_applicable_discounts(
        _instance(price=1000, rules=[_rule("always", 100)], hours_ahead=10),
        _template(rules=[_rule("early", 200, condition="hours_before_min", hours=48)]),
        NOW,
    )
    assert [(i["rule_id"], i["applies"]) for i in items] == [("always", True), ("early", False)]
