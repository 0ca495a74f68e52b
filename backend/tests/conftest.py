"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Pin secrets before any app module is imported.
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("POSTMARK_SERVER_TOKEN", None)

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from database import database
from fakes import FakeClient, run_sync
from models import PlanType
from seed import seed_defaults
from server import app
from services.notification_service import notification_service
from services.subscription_service import subscription_service
from utils import clock


@pytest.fixture
def fake_db():
    """Fresh in-memory database with indexes, plans and payment methods."""
    client = FakeClient()
    previous = (database.client, database.db)
    database.client = client
    database.db = client.db
    run_sync(database._create_indexes())
    run_sync(seed_defaults(client.db))
    yield client.db
    database.client, database.db = previous


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    """Record notify() calls instead of scheduling email tasks."""
    sent = []

    def record(subscriber_id, template_alias, **context):
        sent.append({"subscriber_id": subscriber_id, "template": template_alias, "context": context})

    monkeypatch.setattr(notification_service, "notify", record)
    return sent


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def frozen_clock(monkeypatch):
    """Pin utils.clock.utcnow(); move it with frozen_clock.advance(hours=25)."""
    frozen = FrozenClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


@pytest.fixture
def make_subscriber(fake_db):
    """Create a subscriber through start_trial, then force any stored fields."""
    counter = {"n": 0}

    def _make(plan_type: PlanType = PlanType.BASIC, **fields) -> dict:
        counter["n"] += 1
        profile = {
            "email": f"subscriber{counter['n']}@financetracker.ao",
            "first_name": "Ana",
            "last_name": "Silva",
            "password_hash": "x",
        }
        subscriber = run_sync(subscription_service.start_trial(profile, plan_type))
        if fields:
            run_sync(fake_db.subscribers.update_one(
                {"subscriber_id": subscriber["subscriber_id"]}, {"$set": fields}
            ))
            subscriber.update(fields)
        return subscriber

    return _make


@pytest.fixture
def client(fake_db):
    """Return a TestClient for the main FastAPI app (server:app) on the in-memory database."""
    return TestClient(app)
