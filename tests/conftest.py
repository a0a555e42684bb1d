"""Shared fixtures: in-memory database, API client and user helpers."""

import os

# Before any project import: database.py reads these at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_SCHEDULER"] = "0"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from database import Base, engine, SessionLocal
from models import User, Profile, Goal, Task, GoalStatus
from auth import hash_password
from progression import seed_challenges


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables plus the challenge catalog."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed_challenges(session)
    finally:
        session.close()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    from main import app
    return TestClient(app)


def make_user(db, email="ana@example.com", timezone="UTC", balance=0):
    user = User(email=email, password_hash=hash_password("secret123"))
    db.add(user)
    db.flush()
    db.add(Profile(id=user.id, username="ana", balance=balance, timezone=timezone))
    db.commit()
    return user


def make_goal(db, user, hours=2, deadline_in=timedelta(hours=2), tasks=2, title="Study"):
    now = datetime.utcnow()
    goal = Goal(
        user_id=user.id,
        title=title,
        category="study",
        deadline=now + deadline_in,
        time_allocated=hours * 3600,
        status=GoalStatus.ongoing.value,
    )
    db.add(goal)
    db.flush()
    for position in range(tasks):
        db.add(Task(goal_id=goal.id, title=f"Step {position + 1}", position=position, completed=True))
    db.commit()
    db.refresh(goal)
    return goal


@pytest.fixture
def user(db):
    return make_user(db)


def register(client, email="ana@example.com", password="secret123", username="ana"):
    response = client.post("/auth/register", json={
        "email": email, "password": password, "username": username
    })
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def auth(client):
    """Registers a user and returns (headers, token payload)."""
    data = register(client)
    return {"Authorization": f"Bearer {data['access_token']}"}, data
