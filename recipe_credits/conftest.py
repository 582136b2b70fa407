# recipe_credits/conftest.py
import hashlib
import hmac
import json
import os
import tempfile
import time
from pathlib import Path

import pytest

# Settings are read at import time, so the test environment goes in first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="recipe-credits-tests-")
os.environ["ENV"] = "test"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'test.db'}"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["ALLOW_USER_ID_HEADER"] = "true"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("DATABASE_URL", None)

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create the schema once per session on the temporary SQLite file."""
    from recipe_credits.core.database import create_all_tables, init_engine

    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Delete every row before each test to ensure clean state."""
    from recipe_credits.core.database import clear_all_tables

    clear_all_tables()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from recipe_credits.main import app

    return TestClient(app)


@pytest.fixture
def make_account():
    """Open an account and move it to the given balance and status through the engines."""
    from recipe_credits.features.balance.credit import credit
    from recipe_credits.features.balance.store import apply_subscription_state, get_record, open_account

    counter = {"n": 0}

    def _make(user_id: str, balance=None, status=None, **state):
        open_account(user_id)
        if balance is not None:
            counter["n"] += 1
            credit(user_id, balance, f"test-setup:{counter['n']}", mode="replace")
        if status is not None or state:
            apply_subscription_state(user_id, status=status, **state)
        return get_record(user_id)

    return _make


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header with the real v1 HMAC scheme."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def stripe_event():
    """Factory for signed Stripe events: returns (headers, body)."""

    def _build(event_id: str, event_type: str, obj: dict, secret: str = WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "data": {"object": obj},
            }
        ).encode("utf-8")
        headers = {"stripe-signature": sign_stripe_payload(body, secret, timestamp)}
        return headers, body

    return _build
