"""Shared test fixtures for the MyCEO billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a provisioned parent with a Stripe customer + subscription
- post_event: deliver a (mocked-signature) Stripe event to the webhook
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from werkzeug.security import generate_password_hash

from myceo import create_app
from myceo.extensions import db as _db
from myceo.models.parent import Parent
from myceo.models.user import User


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed a parent user who already checked out (active standard plan).

    Returns a dict of plain IDs so tests can use them after commits
    expire the ORM objects.
    """
    user = User(
        email="parent@example.com",
        password_hash=generate_password_hash("parentpass123"),
        full_name="Pat Parent",
        role="parent",
        email_verified_at=datetime.now(timezone.utc),
    )
    _db.session.add(user)
    _db.session.flush()

    parent = Parent(
        user_id=user.id,
        stripe_customer_id="cus_seed",
        stripe_subscription_id="sub_seed",
        subscription_tier="standard",
        subscription_status="active",
        trial_ends_at=datetime.now(timezone.utc) - timedelta(days=3),
    )
    _db.session.add(parent)
    _db.session.commit()

    return {
        "user_id": user.id,
        "parent_id": parent.id,
        "email": "parent@example.com",
        "password": "parentpass123",
        "customer_id": "cus_seed",
        "subscription_id": "sub_seed",
    }


@pytest.fixture
def unbilled_parent(app, db_session):
    """A parent user with a row but no Stripe customer yet."""
    user = User(
        email="fresh@example.com",
        password_hash=generate_password_hash("freshpass123"),
        full_name="Fresh Parent",
        role="parent",
    )
    _db.session.add(user)
    _db.session.flush()

    parent = Parent(user_id=user.id, subscription_status="trialing")
    _db.session.add(parent)
    _db.session.commit()

    return {
        "user_id": user.id,
        "parent_id": parent.id,
        "email": "fresh@example.com",
        "password": "freshpass123",
    }


@pytest.fixture
def login(client):
    """Log a user in through /auth/login."""

    def _login(email, password):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200
        return resp

    return _login


@pytest.fixture
def post_event(client):
    """Deliver a Stripe event to /stripe/webhooks with signature checks mocked.

    Usage: resp = post_event({"id": "evt_1", "type": ..., "data": {"object": {...}}})
    """

    def _post(event):
        with patch(
            "myceo.services.stripe_service.stripe.Webhook.construct_event",
            return_value=event,
        ):
            return client.post(
                "/stripe/webhooks",
                data="{}",
                content_type="application/json",
                headers={"Stripe-Signature": "valid_sig"},
            )

    return _post

