"""Shared test fixtures for the Monetary Catalyst API test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, email suppressed)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- outbox: suppressed emails captured by the email queue
- stripe_mock: MagicMock swapped in for the injected StripeClient
- identity_mock: MagicMock swapped in for the identity provider client
- profile / auth_headers: a registered user and a Bearer header for them
- post_event: sends a correctly signed Stripe webhook
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock

from catalyst import create_app
from catalyst.extensions import db as _db, email_queue
from catalyst.models.billing import Subscription
from catalyst.models.user_profile import UserProfile
from catalyst.services.token_service import sign_token

WEBHOOK_SECRET = "whsec_test_fake"
USER_ID = "user_abc123"
USER_EMAIL = "reader@example.com"


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


@pytest.fixture(autouse=True)
def outbox(app):
    email_queue.outbox.clear()
    yield email_queue.outbox
    email_queue.outbox.clear()


@pytest.fixture
def stripe_mock(app):
    """Replace the StripeClient held by the reconciler and billing service."""
    mock = MagicMock()
    reconciler = app.extensions["reconciler"]
    billing_service = app.extensions["billing_service"]
    originals = (reconciler.billing, billing_service.billing)
    reconciler.billing = mock
    billing_service.billing = mock
    yield mock
    reconciler.billing, billing_service.billing = originals


@pytest.fixture(autouse=True)
def identity_mock(app):
    """No test ever talks to the real identity provider."""
    mock = MagicMock()
    mock.get_user.return_value = None
    original = app.extensions["identity"]
    app.extensions["identity"] = mock
    yield mock
    app.extensions["identity"] = original


@pytest.fixture
def profile(db_session):
    profile = UserProfile(
        user_id=USER_ID,
        email=USER_EMAIL,
        first_name="Ada",
        last_name="Reader",
        terms_accepted=True,
    )
    db_session.add(profile)
    db_session.commit()
    return profile


@pytest.fixture
def customer_profile(profile, db_session):
    """The same user after a first checkout created their Stripe customer."""
    profile.stripe_customer_id = "cus_123"
    db_session.commit()
    return profile


@pytest.fixture
def auth_headers(app, db_session):
    return {"Authorization": f"Bearer {sign_token(USER_ID, USER_EMAIL)}"}


def _make_subscription(session, stripe_subscription_id="sub_123", user_id=USER_ID,
                      end_date=None, **overrides):
    fields = {
        "user_id": user_id,
        "stripe_subscription_id": stripe_subscription_id,
        "status": "active",
        "payment_status": "active",
        "plan_type": "monthly",
        "start_date": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "end_date": end_date or datetime(2026, 2, 1, tzinfo=timezone.utc),
        "last_payment_id": "pi_first",
    }
    fields.update(overrides)
    sub = Subscription(**fields)
    session.add(sub)
    session.commit()
    return sub


@pytest.fixture
def make_subscription(db_session):
    """Builder for Subscription rows; defaults describe sub_123 for USER_ID."""

    def _make(stripe_subscription_id="sub_123", **kwargs):
        return _make_subscription(db_session, stripe_subscription_id, **kwargs)

    return _make


@pytest.fixture
def subscription(profile, make_subscription):
    return make_subscription()


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Stripe-Signature header value for payload (v1 scheme)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def post_event(client):
    """POST a signed event to /api/webhook."""

    def _post(event_id, event_type, obj, secret=WEBHOOK_SECRET):
        payload = json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        })
        return client.post(
            "/api/webhook",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload, secret)},
        )

    return _post


@pytest.fixture
def stripe_signature():
    """sign_payload as a fixture, for tests that build requests by hand."""
    return sign_payload
