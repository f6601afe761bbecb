from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from database import Base, get_db
from main import app
from security import hash_password, token_for

PASSWORD = "password123"


def utc_in(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
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
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="member@example.com", role="member", full_name=None):
        user = models.User(email=email, full_name=full_name, role=role, password_hash=hash_password(PASSWORD))
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def member(make_user):
    return make_user(email="member@example.com", full_name="Maya Member")


@pytest.fixture
def staff(make_user):
    return make_user(email="door@example.com", role="staff", full_name="Door Staff Dana")


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin", full_name="Ada Admin")


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {token_for(user)}"}

    return _headers


@pytest.fixture
def make_ticket(db):
    def _make(user, **overrides):
        values = {
            "user_id": user.id,
            "amount": 1500,
            "currency": "usd",
            "status": "paid",
            "valid_until": utc_in(days=1),
        }
        values.update(overrides)
        ticket = models.Ticket(**values)
        db.add(ticket)
        db.commit()
        db.refresh(ticket)
        return ticket

    return _make


@pytest.fixture
def make_subscription(db):
    def _make(user, **overrides):
        values = {
            "user_id": user.id,
            "status": "active",
            "current_period_start": utc_in(days=-1),
            "current_period_end": utc_in(days=30),
        }
        values.update(overrides)
        subscription = models.Subscription(**values)
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def make_media_pass(db):
    def _make(user, **overrides):
        values = {
            "user_id": user.id,
            "pass_type": "season",
            "photographer_name": "Pat Photo",
            "instagram_handle": "@patphoto",
            "amount": 5000,
            "status": "paid",
            "valid_until": utc_in(days=7),
        }
        values.update(overrides)
        media_pass = models.MediaPass(**values)
        db.add(media_pass)
        db.commit()
        db.refresh(media_pass)
        return media_pass

    return _make
