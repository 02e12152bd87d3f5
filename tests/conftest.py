from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("FITBOOK_DATABASE_URL", f"sqlite:///{ROOT / 'fitbook_test.db'}")
os.environ.setdefault("FITBOOK_PAYMENTS_PROVIDER", "fake")
os.environ.setdefault("FITBOOK_EMAIL_PROVIDER", "fake")

from fitbook.context import RequestContext
from fitbook.database import Base, SessionLocal, engine
from fitbook.models import Business, ClassInstance, ClassTemplate, User, Venue
from fitbook.notifications import FakeEmailProvider, Notifier
from fitbook.utils import time_pattern_data


# Monday 09:00 UTC
NOW = datetime(2030, 1, 7, 9, 0)


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class Factory:
    def __init__(self, db) -> None:
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def business(self, name: str = "Studio One") -> Business:
        return self._save(Business(name=name))

    def venue(self, business: Business, name: str = "Main Hall") -> Venue:
        return self._save(Venue(business_id=business.id, name=name))

    def staff(self, business: Business, name: str = "Owner") -> User:
        return self._save(User(name=name, email=f"{name.lower()}@studio.test", business_id=business.id))

    def user(self, credits: int = 0, name: str = "Alex") -> User:
        return self._save(User(name=name, email=f"{name.lower()}@member.test", credits=credits))

    def template(self, business: Business, **overrides) -> ClassTemplate:
        values = dict(
            business_id=business.id,
            name="Morning Yoga",
            duration_minutes=60,
            capacity=10,
            price=1000,
            cancellation_window_hours=12,
        )
        values.update(overrides)
        return self._save(ClassTemplate(**values))

    def instance(self, template: ClassTemplate, start_time: datetime, **overrides) -> ClassInstance:
        end_time = overrides.pop("end_time", start_time + timedelta(minutes=template.duration_minutes))
        values = dict(
            business_id=template.business_id,
            template_id=template.id,
            venue_id=template.venue_id,
            name=template.name,
            start_time=start_time,
            end_time=end_time,
            status="scheduled",
            booked_count=0,
        )
        values.update(time_pattern_data(start_time, end_time))
        values.update(overrides)
        return self._save(ClassInstance(**values))


@pytest.fixture()
def factory(db) -> Factory:
    return Factory(db)


@pytest.fixture()
def outbox() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture()
def make_ctx(db, outbox):
    def _make(user: User, now: datetime = NOW) -> RequestContext:
        return RequestContext(db=db, user=user, now=now, notifier=Notifier(outbox))

    return _make
