"""
Shared fixtures: in-memory database, API client and data factories.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["NOTICE_WEBHOOK_SECRET"] = "test-secret"
os.environ["NOTIFY_WEBHOOK_URL"] = ""

import pytest
from datetime import timedelta
from decimal import Decimal
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.utils import utcnow
from app.db.base import Base
from app.db.session import get_db
from app.models import Group, GroupMember, MembershipStatus, Person
from app.schemas.activity import ActivityCreate
from app.services import roster_service
from app.services.events import drain_events
from app.main import app


def create_access_token(data: dict) -> str:
    """Mint a token the way the identity service does."""
    to_encode = data.copy()
    to_encode.update({"exp": utcnow() + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class Factory:
    """Builds people, groups and activities through the same code paths the API uses."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def person(self, name, email=None, phone=None, payment_handle=None):
        self._seq += 1
        person = Person(
            name=name,
            email=email or f"player{self._seq}@example.com",
            phone=phone,
            payment_handle=payment_handle,
            is_active=True
        )
        self.db.add(person)
        self.db.commit()
        self.db.refresh(person)
        return person

    def group(self, owner, members=(), name="Tuesday Doubles"):
        group = Group(name=name, owner_id=owner.id)
        self.db.add(group)
        self.db.flush()
        for person in (owner,) + tuple(members):
            self.db.add(GroupMember(group_id=group.id, person_id=person.id, is_active=True))
        self.db.commit()
        self.db.refresh(group)
        return group

    def activity(self, owner, group=None, **overrides):
        group = group or self.group(owner)
        fields = {
            "group_id": group.id,
            "scheduled_at": utcnow() + timedelta(days=3),
            "min_participants": 4,
            "max_participants": 7,
            "resource_units": 1,
            "owner_rate_per_unit": Decimal("9.00"),
            "shared_pool_rate_per_unit": Decimal("48.00"),
        }
        fields.update(overrides)
        activity = roster_service.create_activity(owner.id, ActivityCreate(**fields), self.db)
        drain_events(self.db)
        return activity

    def commit(self, activity, *people):
        memberships = [
            roster_service.set_participation(activity.id, person.id, MembershipStatus.COMMITTED, self.db)
            for person in people
        ]
        drain_events(self.db)
        return memberships

    def players(self, *names):
        return [self.person(name) for name in names]

    def headers(self, person):
        token = create_access_token({"person_id": person.id})
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def owner(factory):
    return factory.person("Olivia Owner", payment_handle="@olivia-owner")


@pytest.fixture
def guests(factory):
    return [
        factory.person("Erik Berg", payment_handle="@erik-berg"),
        factory.person("Sarah Connor"),
        factory.person("Michael Jordan"),
        factory.person("Priya Patel"),
        factory.person("Tomas Novak"),
    ]


@pytest.fixture
def locked_activity(factory, owner, guests):
    """Owner plus five committed guests, locked at 48.00 / 5 = 9.60 each."""
    from app.services import ledger_service

    group = factory.group(owner, guests)
    activity = factory.activity(owner, group, max_participants=6)
    factory.commit(activity, *guests)
    ledger_service.lock_roster(activity.id, factory.db)
    drain_events(factory.db)
    return activity
