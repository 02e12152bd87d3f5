from __future__ import annotations

import pytest
from sqlalchemy import select, update

from fitbook import ledger
from fitbook.database import transaction
from fitbook.errors import ActionNotAllowedError, InsufficientCreditsError, ValidationError
from fitbook.models import CreditTransaction, User


def test_spend_and_credit_keep_balance_equal_to_ledger(db, factory) -> None:
    user = factory.user(credits=0)
    with transaction(db):
        ledger.add_credits(db, user.id, 2000, "gift", reason="welcome")
        ledger.spend_credits(db, user.id, 700, description="Booking")
        ledger.add_credits(db, user.id, 350, "refund")

    assert ledger.get_balance(db, user.id) == 1650
    assert ledger.compute_balance(db, user.id) == 1650


def test_spend_rejects_overdraw_without_writing(db, factory) -> None:
    user = factory.user(credits=500)
    with pytest.raises(InsufficientCreditsError):
        with transaction(db):
            ledger.spend_credits(db, user.id, 501)

    assert ledger.get_balance(db, user.id) == 500
    assert db.execute(select(CreditTransaction)).scalars().all() == []


def test_spend_amount_must_be_positive(db, factory) -> None:
    user = factory.user(credits=500)
    with pytest.raises(ValidationError):
        ledger.spend_credits(db, user.id, 0)


def test_idempotency_key_applies_once(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        first = ledger.add_credits(db, user.id, 1000, "gift", idempotency_key="gift:1")
    with transaction(db):
        second = ledger.add_credits(db, user.id, 1000, "gift", idempotency_key="gift:1")

    assert first.applied and not second.applied
    assert second.transaction_id == first.transaction_id
    assert ledger.get_balance(db, user.id) == 1000


def test_lifetime_credits_track_grants_and_purchases_only(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        ledger.add_credits(db, user.id, 1000, "subscription_grant")
        ledger.add_credits(db, user.id, 500, "gift")
    db.expire_all()
    assert db.get(User, user.id).lifetime_credits == 1000


def test_unknown_credit_type_is_rejected(db, factory) -> None:
    user = factory.user()
    with pytest.raises(ValidationError):
        ledger.add_credits(db, user.id, 100, "bonus")


def test_purchase_completes_exactly_once(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        pending = ledger.create_pending_purchase(db, user.id, 1000, price_cents=1000, checkout_session_id="cs_1")
    assert ledger.get_balance(db, user.id) == 0
    assert ledger.compute_balance(db, user.id) == 0

    with transaction(db):
        first = ledger.complete_credit_purchase(db, checkout_session_id="cs_1")
    with transaction(db):
        second = ledger.complete_credit_purchase(db, checkout_session_id="cs_1")

    assert first.transaction_id == pending.id
    assert first.credits_added == 1000
    assert second.already_completed and second.credits_added == 0
    assert ledger.get_balance(db, user.id) == 1000
    assert ledger.compute_balance(db, user.id) == 1000


def test_failed_purchase_cannot_complete(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        ledger.create_pending_purchase(db, user.id, 1000, price_cents=1000, checkout_session_id="cs_2")
        ledger.attach_payment_intent(db, "cs_2", "pi_2")
    with transaction(db):
        assert ledger.fail_credit_purchase(db, payment_intent_id="pi_2")

    with pytest.raises(ActionNotAllowedError):
        with transaction(db):
            ledger.complete_credit_purchase(db, payment_intent_id="pi_2")
    assert ledger.get_balance(db, user.id) == 0


def test_reconcile_reports_and_repairs_drift(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        ledger.add_credits(db, user.id, 800, "gift")
    with transaction(db):
        db.execute(update(User).where(User.id == user.id).values(credits=999))

    report = ledger.reconcile_user_credits(db, user.id)
    assert report["difference"] == 199
    assert report["updated"] is False

    with transaction(db):
        repaired = ledger.reconcile_user_credits(db, user.id, update_cache=True)
    assert repaired["updated"] is True
    assert ledger.get_balance(db, user.id) == 800


def test_list_transactions_newest_first(db, factory) -> None:
    user = factory.user()
    with transaction(db):
        ledger.add_credits(db, user.id, 100, "gift", reason="first")
    with transaction(db):
        ledger.add_credits(db, user.id, 200, "gift", reason="second")

    items, total = ledger.list_transactions(db, user.id, page=1, page_size=1)
    assert total == 2
    assert len(items) == 1
