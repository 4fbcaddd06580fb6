"""Tests for the Stripe webhook endpoint and ledger reconciliation.

Covers:
- Signature verification (missing, invalid, tampered) with no store writes
- Idempotent event processing (duplicate events skipped)
- checkout.session.completed -> Subscription + first Payment + email
- invoice.payment_succeeded -> deduplicated Payment + monotonic end_date
- invoice.payment_failed -> inactive/failed, no Payment
- customer.subscription.deleted -> expired/cancelled
- setup_intent.succeeded -> default payment method everywhere
- Unknown event types (acknowledged)
- Retry of store calls on the recurring-payment path
"""

import json
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import call, patch

import pytest
import stripe
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from catalyst import create_app
from catalyst.config import TestConfig, config_by_name
from catalyst.extensions import db as _db, email_queue
from catalyst.models.billing import Payment, Subscription, as_utc
from catalyst.models.stripe_event import StripeEvent

PERIOD_START = 1767225600     # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000       # 2026-02-01T00:00:00Z
NEXT_PERIOD_END = 1772323200  # 2026-03-01T00:00:00Z


def _stripe_subscription(sub_id="sub_123", interval="month",
                         period_end=PERIOD_END, nested=False):
    item = {"price": {"id": "price_123", "recurring": {"interval": interval}}}
    sub = {"id": sub_id, "object": "subscription", "status": "active",
           "latest_invoice": "in_first", "items": {"data": [item]}}
    bounds = {"current_period_start": PERIOD_START, "current_period_end": period_end}
    if nested:
        item.update(bounds)
    else:
        sub.update(bounds)
    return sub


def _first_invoice():
    return {"id": "in_first", "object": "invoice",
            "payment_intent": "pi_first", "amount_paid": 999}


def _checkout_session(**overrides):
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "client_reference_id": "user_abc123",
        "customer": "cus_123",
        "subscription": "sub_123",
        "invoice": "in_first",
        "customer_details": {"email": "billing@example.com", "name": "Ada Reader"},
    }
    session.update(overrides)
    return session


def _invoice(invoice_id="in_renew_1", payment_intent="pi_renew_1",
             subscription="sub_123", amount_paid=999):
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "payment_intent": payment_intent,
        "amount_paid": amount_paid,
    }


def _stamp(value):
    return as_utc(value).timestamp()


def _db_down(statement="UPDATE subscriptions"):
    return OperationalError(statement, {}, Exception("connection reset"))


class TestWebhookSignature:
    """Signature failures answer 400 before anything is parsed or written."""

    def test_missing_signature_returns_400(self, client, stripe_mock, subscription):
        resp = client.post(
            "/api/webhook",
            data=json.dumps({"id": "evt_1", "type": "invoice.payment_failed"}),
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.data.startswith(b"Webhook Error:")
        assert resp.mimetype == "text/plain"

    def test_invalid_signature_returns_400_without_writes(
        self, post_event, stripe_mock, subscription
    ):
        resp = post_event(
            "evt_forged", "invoice.payment_failed", _invoice(),
            secret="whsec_wrong",
        )
        assert resp.status_code == 400
        assert b"Webhook Error" in resp.data

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_123").first()
        assert sub.status == "active"
        assert sub.payment_status == "active"
        assert StripeEvent.query.count() == 0
        stripe_mock.subscriptions.retrieve.assert_not_called()

    def test_tampered_payload_returns_400(
        self, client, stripe_signature, stripe_mock, subscription
    ):
        """A valid signature for one body does not verify another."""
        original = json.dumps({"id": "evt_1", "type": "customer.created",
                               "data": {"object": {}}})
        tampered = json.dumps({"id": "evt_1", "type": "invoice.payment_failed",
                               "data": {"object": _invoice()}})
        resp = client.post(
            "/api/webhook",
            data=tampered,
            content_type="application/json",
            headers={"Stripe-Signature": stripe_signature(original)},
        )
        assert resp.status_code == 400
        assert Subscription.query.first().status == "active"
        assert StripeEvent.query.count() == 0


class TestWebhookIdempotency:
    """Redelivered events never apply twice."""

    def test_duplicate_event_returns_200_and_skips(
        self, post_event, stripe_mock, profile, outbox
    ):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription()
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        first = post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())
        second = post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.get_json() == {"received": True}
        assert stripe_mock.subscriptions.retrieve.call_count == 1
        assert Subscription.query.count() == 1
        assert Payment.query.count() == 1
        assert len(outbox) == 1

    def test_event_recorded_after_processing(self, post_event, stripe_mock, subscription):
        post_event("evt_fail_1", "invoice.payment_failed", _invoice())

        evt = StripeEvent.query.filter_by(stripe_event_id="evt_fail_1").first()
        assert evt is not None
        assert evt.event_type == "invoice.payment_failed"


class TestCheckoutCompleted:
    """checkout.session.completed creates the subscription and first payment."""

    def test_creates_subscription_and_payment(self, post_event, stripe_mock, profile, outbox):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription()
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        resp = post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())
        assert resp.status_code == 200
        assert resp.get_json() == {"received": True}

        stripe_mock.subscriptions.retrieve.assert_called_once_with("sub_123")
        stripe_mock.invoices.retrieve.assert_called_once_with("in_first")

        subs = Subscription.query.all()
        assert len(subs) == 1
        sub = subs[0]
        assert sub.user_id == "user_abc123"
        assert sub.stripe_subscription_id == "sub_123"
        assert sub.status == "active"
        assert sub.payment_status == "active"
        assert sub.plan_type == "monthly"
        assert _stamp(sub.start_date) == PERIOD_START
        assert _stamp(sub.end_date) == PERIOD_END
        assert sub.last_payment_id == "pi_first"

        payments = Payment.query.all()
        assert len(payments) == 1
        payment = payments[0]
        assert payment.subscription_id == sub.id
        assert payment.stripe_payment_id == "pi_first"
        assert payment.stripe_invoice_id == "in_first"
        assert payment.amount == Decimal("9.99")
        assert payment.status == "successful"
        assert payment.stripe_payment_status == "succeeded"

    def test_confirmation_email_queued_once(self, post_event, stripe_mock, profile, outbox):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription()
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert len(outbox) == 1
        assert outbox[0]["To"] == "reader@example.com"
        assert "subscription is active" in outbox[0]["Subject"]

    def test_email_falls_back_to_customer_details(self, post_event, stripe_mock, outbox):
        """No local profile yet: address comes from the checkout session."""
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription()
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert len(outbox) == 1
        assert outbox[0]["To"] == "billing@example.com"

    def test_yearly_plan(self, post_event, stripe_mock, profile):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(interval="year")
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert Subscription.query.first().plan_type == "yearly"

    def test_period_on_subscription_item(self, post_event, stripe_mock, profile):
        """Newer API versions carry the billing period on items.data[0]."""
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(nested=True)
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        sub = Subscription.query.first()
        assert _stamp(sub.start_date) == PERIOD_START
        assert _stamp(sub.end_date) == PERIOD_END

    def test_known_subscription_is_not_recreated(
        self, post_event, stripe_mock, subscription, outbox
    ):
        """Same subscription under a new event id: no writes, no email."""
        resp = post_event("evt_checkout_2", "checkout.session.completed", _checkout_session())

        assert resp.status_code == 200
        assert Subscription.query.count() == 1
        assert Payment.query.count() == 0
        assert outbox == []
        stripe_mock.subscriptions.retrieve.assert_not_called()

    def test_missing_client_reference_is_acknowledged(self, post_event, stripe_mock, outbox):
        resp = post_event(
            "evt_checkout_1", "checkout.session.completed",
            _checkout_session(client_reference_id=None),
        )
        assert resp.status_code == 200
        assert Subscription.query.count() == 0
        assert outbox == []

    def test_provider_failure_returns_500_without_writes(
        self, post_event, stripe_mock, profile, outbox
    ):
        stripe_mock.subscriptions.retrieve.side_effect = stripe.APIConnectionError(
            "Network error"
        )

        resp = post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert resp.status_code == 500
        assert "Network error" in resp.get_json()["error"]
        assert Subscription.query.count() == 0
        assert Payment.query.count() == 0
        assert StripeEvent.query.count() == 0
        assert outbox == []

    def test_redelivery_after_failure_succeeds(self, post_event, stripe_mock, profile, outbox):
        stripe_mock.subscriptions.retrieve.side_effect = [
            stripe.APIConnectionError("Network error"),
            _stripe_subscription(),
        ]
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        assert post_event(
            "evt_checkout_1", "checkout.session.completed", _checkout_session()
        ).status_code == 500
        assert post_event(
            "evt_checkout_1", "checkout.session.completed", _checkout_session()
        ).status_code == 200

        assert Subscription.query.count() == 1
        assert Payment.query.count() == 1
        assert len(outbox) == 1

    @patch("catalyst.services.reconciliation_service.send_subscription_confirmation")
    def test_email_failure_does_not_fail_webhook(
        self, mock_send, post_event, stripe_mock, profile
    ):
        mock_send.side_effect = RuntimeError("template missing")
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription()
        stripe_mock.invoices.retrieve.return_value = _first_invoice()

        resp = post_event("evt_checkout_1", "checkout.session.completed", _checkout_session())

        assert resp.status_code == 200
        assert Subscription.query.count() == 1
        assert Payment.query.count() == 1
        mock_send.assert_called_once()


class TestInvoicePaymentSucceeded:
    """Recurring payments append one Payment and push end_date forward."""

    def test_records_payment_and_renews(self, post_event, stripe_mock, subscription):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=NEXT_PERIOD_END
        )

        resp = post_event("evt_inv_1", "invoice.payment_succeeded", _invoice(amount_paid=1999))
        assert resp.status_code == 200

        payment = Payment.query.filter_by(stripe_payment_id="pi_renew_1").one()
        assert payment.amount == Decimal("19.99")
        assert payment.stripe_invoice_id == "in_renew_1"
        assert payment.user_id == "user_abc123"

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_123").one()
        assert payment.subscription_id == sub.id
        assert sub.status == "active"
        assert sub.payment_status == "active"
        assert sub.last_payment_id == "pi_renew_1"
        assert sub.last_payment_date is not None
        assert _stamp(sub.end_date) == NEXT_PERIOD_END

    def test_reactivates_failed_subscription(self, post_event, stripe_mock, profile,
                                             make_subscription):
        make_subscription(status="inactive", payment_status="failed")
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=NEXT_PERIOD_END
        )

        post_event("evt_inv_1", "invoice.payment_succeeded", _invoice())

        sub = Subscription.query.one()
        assert (sub.status, sub.payment_status) == ("active", "active")

    def test_redelivered_payload_creates_one_payment(self, post_event, stripe_mock, subscription):
        """Same invoice under two event ids still yields exactly one Payment."""
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=NEXT_PERIOD_END
        )

        assert post_event("evt_inv_a", "invoice.payment_succeeded", _invoice()).status_code == 200
        assert post_event("evt_inv_b", "invoice.payment_succeeded", _invoice()).status_code == 200

        assert Payment.query.filter_by(stripe_payment_id="pi_renew_1").count() == 1

    def test_end_date_never_moves_backwards(self, post_event, stripe_mock, profile,
                                            make_subscription):
        later = datetime(2026, 3, 1, tzinfo=timezone.utc)
        make_subscription(end_date=later)
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=PERIOD_END
        )

        post_event("evt_inv_1", "invoice.payment_succeeded", _invoice())

        sub = Subscription.query.one()
        assert as_utc(sub.end_date) == later
        assert sub.last_payment_id == "pi_renew_1"

    def test_newer_invoice_shape(self, post_event, stripe_mock, subscription):
        """Subscription under parent.subscription_details, intent under payments."""
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=NEXT_PERIOD_END, nested=True
        )
        invoice = {
            "id": "in_new_1",
            "object": "invoice",
            "amount_paid": 999,
            "parent": {"subscription_details": {"subscription": "sub_123"}},
            "payments": {"data": [{"payment": {"payment_intent": "pi_new_1"}}]},
        }

        resp = post_event("evt_inv_1", "invoice.payment_succeeded", invoice)

        assert resp.status_code == 200
        assert Payment.query.filter_by(stripe_payment_id="pi_new_1").count() == 1
        assert _stamp(Subscription.query.one().end_date) == NEXT_PERIOD_END

    def test_unknown_subscription_is_acknowledged(self, post_event, stripe_mock):
        resp = post_event("evt_inv_1", "invoice.payment_succeeded", _invoice(subscription="sub_other"))

        assert resp.status_code == 200
        assert Payment.query.count() == 0

    def test_invoice_without_payment_intent_is_skipped(self, post_event, stripe_mock, subscription):
        resp = post_event("evt_inv_1", "invoice.payment_succeeded", _invoice(payment_intent=None))

        assert resp.status_code == 200
        assert Payment.query.count() == 0

    def test_invoice_without_subscription_is_ignored(self, post_event, stripe_mock, subscription):
        resp = post_event("evt_inv_1", "invoice.payment_succeeded", _invoice(subscription=None))

        assert resp.status_code == 200
        assert Payment.query.count() == 0
        stripe_mock.subscriptions.retrieve.assert_not_called()

    def test_transient_store_failure_is_retried(self, app, post_event, stripe_mock, subscription):
        stripe_mock.subscriptions.retrieve.return_value = _stripe_subscription(
            period_end=NEXT_PERIOD_END
        )
        store = app.extensions["reconciler"].store
        real_add_payment = store.add_payment
        attempts = []

        def flaky(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise _db_down("INSERT INTO payments")
            return real_add_payment(*args, **kwargs)

        with patch.object(store, "add_payment", side_effect=flaky):
            resp = post_event("evt_inv_1", "invoice.payment_succeeded", _invoice())

        assert resp.status_code == 200
        assert len(attempts) == 2
        assert Payment.query.filter_by(stripe_payment_id="pi_renew_1").count() == 1


class TestInvoicePaymentFailed:
    """Failed renewals flag the subscription and record no payment."""

    def test_marks_inactive_failed(self, post_event, stripe_mock, subscription):
        resp = post_event("evt_fail_1", "invoice.payment_failed", _invoice())
        assert resp.status_code == 200

        sub = Subscription.query.one()
        assert sub.status == "inactive"
        assert sub.payment_status == "failed"
        assert Payment.query.count() == 0

    def test_store_failure_retried_then_500(self, app, post_event, stripe_mock, subscription):
        store = app.extensions["reconciler"].store
        with patch.object(store, "mark_payment_failed", side_effect=_db_down()) as mock_mark:
            resp = post_event("evt_fail_1", "invoice.payment_failed", _invoice())

        assert resp.status_code == 500
        assert "connection reset" in resp.get_json()["error"]
        assert mock_mark.call_count == 3
        assert StripeEvent.query.count() == 0

    def test_error_text_hidden_in_production(self, app, post_event, stripe_mock, subscription):
        store = app.extensions["reconciler"].store
        with patch.object(store, "mark_payment_failed", side_effect=_db_down()), \
                patch.dict(app.config, {"APP_ENV": "production"}):
            resp = post_event("evt_fail_1", "invoice.payment_failed", _invoice())

        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Webhook handler failed"}

    def test_unknown_subscription_is_acknowledged(self, post_event, stripe_mock):
        resp = post_event("evt_fail_1", "invoice.payment_failed", _invoice(subscription="sub_other"))
        assert resp.status_code == 200


class TestSubscriptionDeleted:
    """customer.subscription.deleted ends access locally."""

    def test_marks_expired_with_period_end(self, post_event, stripe_mock, subscription):
        resp = post_event("evt_del_1", "customer.subscription.deleted", {
            "id": "sub_123",
            "object": "subscription",
            "status": "canceled",
            "customer": "cus_123",
            "current_period_end": NEXT_PERIOD_END,
        })
        assert resp.status_code == 200

        sub = Subscription.query.one()
        assert sub.status == "expired"
        assert sub.payment_status == "cancelled"
        assert _stamp(sub.end_date) == NEXT_PERIOD_END

    def test_unknown_subscription_is_acknowledged(self, post_event, stripe_mock):
        resp = post_event("evt_del_1", "customer.subscription.deleted", {
            "id": "sub_missing", "object": "subscription",
            "current_period_end": NEXT_PERIOD_END,
        })
        assert resp.status_code == 200
        assert Subscription.query.count() == 0


class TestSetupIntentSucceeded:
    """A confirmed card becomes the default for the customer and subscriptions."""

    def test_updates_customer_and_active_subscriptions(self, post_event, stripe_mock):
        stripe_mock.subscriptions.list.return_value = {
            "data": [{"id": "sub_123"}, {"id": "sub_456"}]
        }

        resp = post_event("evt_seti_1", "setup_intent.succeeded", {
            "id": "seti_1",
            "object": "setup_intent",
            "customer": "cus_123",
            "payment_method": "pm_new",
        })
        assert resp.status_code == 200

        stripe_mock.customers.update.assert_called_once_with(
            "cus_123",
            params={"invoice_settings": {"default_payment_method": "pm_new"}},
        )
        stripe_mock.subscriptions.list.assert_called_once_with(
            params={"customer": "cus_123", "status": "active"}
        )
        stripe_mock.subscriptions.update.assert_has_calls([
            call("sub_123", params={"default_payment_method": "pm_new"}),
            call("sub_456", params={"default_payment_method": "pm_new"}),
        ])

    def test_missing_customer_is_ignored(self, post_event, stripe_mock):
        resp = post_event("evt_seti_1", "setup_intent.succeeded", {
            "id": "seti_1", "object": "setup_intent", "payment_method": "pm_new",
        })
        assert resp.status_code == 200
        stripe_mock.customers.update.assert_not_called()


class TestUnknownEvents:
    def test_unknown_type_is_acknowledged(self, post_event, stripe_mock, subscription):
        resp = post_event("evt_misc_1", "customer.created", {"id": "cus_999", "object": "customer"})

        assert resp.status_code == 200
        assert StripeEvent.query.filter_by(stripe_event_id="evt_misc_1").count() == 1
        assert Subscription.query.one().status == "active"


@pytest.fixture
def file_backed_app(tmp_path, monkeypatch):
    """Second app on a SQLite file, so a reconnect finds the same tables."""

    class FileBackedConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.db'}"

    monkeypatch.setitem(config_by_name, "file-backed", FileBackedConfig)
    mail_app = email_queue.app
    file_app = create_app("file-backed")
    with file_app.app_context():
        _db.create_all()
        yield file_app
        _db.session.remove()
        _db.engine.dispose()
    email_queue.app = mail_app


class TestDroppedConnection:
    """A connection lost mid-read is retried on a fresh transaction."""

    def test_lost_connection_during_read_is_retried(self, file_backed_app, stripe_signature):
        _db.session.add(Subscription(
            user_id="user_abc123",
            stripe_subscription_id="sub_123",
            status="active",
            payment_status="active",
            plan_type="monthly",
            start_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
            end_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
        ))
        _db.session.commit()

        dropped = []

        def drop_first_subscription_read(conn, cursor, statement, parameters,
                                         context, executemany):
            if not dropped and statement.startswith("SELECT") \
                    and "FROM subscriptions" in statement:
                dropped.append(statement)
                raise sqlite3.OperationalError("disk I/O error")
            return statement, parameters

        def flag_disconnect(context):
            if "disk I/O error" in str(context.original_exception):
                context.is_disconnect = True

        event.listen(_db.engine, "before_cursor_execute",
                     drop_first_subscription_read, retval=True)
        event.listen(_db.engine, "handle_error", flag_disconnect)

        payload = json.dumps({
            "id": "evt_fail_1",
            "object": "event",
            "type": "invoice.payment_failed",
            "data": {"object": _invoice()},
        })
        resp = file_backed_app.test_client().post(
            "/api/webhook",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": stripe_signature(payload)},
        )

        assert resp.status_code == 200
        assert len(dropped) == 1
        sub = Subscription.query.one()
        assert sub.status == "inactive"
        assert sub.payment_status == "failed"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_fail_1").count() == 1
