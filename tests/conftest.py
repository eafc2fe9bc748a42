import os

# Settings are read at import time, so the environment must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["SESSION_SWEEP_ENABLED"] = "false"
os.environ["INTAKE_WEBHOOK_SECRET"] = ""
os.environ["VALIDATE_TWILIO_SIGNATURE"] = "false"
os.environ["ALLOW_MOST_RECENT_FALLBACK"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LLM_API_ENDPOINT"] = ""

from datetime import datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from intake_api.api.deps import get_session_registry, get_transcript_parser
from intake_api.db import models
from intake_api.db.database import Base, SessionLocal, engine
from intake_api.main import app
from intake_api.services.session_registry import InMemorySessionRegistry
from intake_api.services.transcript_parser import TranscriptParser

ADA_PHONE = "+15551234567"
GRACE_PHONE = "+15559876543"


class FakeClock:
    """Callable clock that tests move forward by hand."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeParser(TranscriptParser):
    name = "fake"

    def __init__(self, result=None, error=None):
        self.result = result if result is not None else {
            "communication_style": "Direct and concise",
            "professional_goals": "Grow the consulting practice",
            "values": "Honesty",
            "partnership_expectations": "Regular check-ins",
        }
        self.error = error
        self.calls = []

    def _extract(self, transcript):
        self.calls.append(transcript)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def contacts(db):
    """Ada (contact 42, user 7) and Grace (contact 43, user 8)."""
    db.add_all([
        models.User(id=7, email="owner7@example.com"),
        models.User(id=8, email="owner8@example.com"),
    ])
    db.add_all([
        models.Contact(id=42, phone_number=ADA_PHONE, user_id=7, first_name="Ada", last_name="Lovelace"),
        models.Contact(id=43, phone_number=GRACE_PHONE, user_id=8, first_name="Grace", last_name="Hopper"),
    ])
    db.commit()
    return {"ada": 42, "grace": 43}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return InMemorySessionRegistry(retention=timedelta(hours=4))


@pytest.fixture
def parser():
    return FakeParser()


@pytest.fixture
def client(registry, parser):
    app.dependency_overrides[get_session_registry] = lambda: registry
    app.dependency_overrides[get_transcript_parser] = lambda: parser
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sql_client(parser):
    """App wired like production: the table-backed registry shares each request's transaction."""
    app.dependency_overrides[get_transcript_parser] = lambda: parser
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_token(user_id=7, secret="test-jwt-secret"):
    return jwt.encode({"userId": user_id}, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token(7)}"}


def fetch_intakes():
    """All intake rows, read through a fresh session."""
    session = SessionLocal()
    try:
        return session.query(models.IntakeResponse).order_by(models.IntakeResponse.id).all()
    finally:
        session.close()
