"""Stripe webhook reconciliation - keeps the local ledger in step with Stripe.

Responsible for:
- Verifying webhook signatures before anything is parsed
- Mapping event types onto EventKind and dispatching to one handler each
- Subscription/Payment writes for checkout, renewal, failure, cancellation
- Skipping redelivered events (stripe_events) and duplicate payments
  (unique stripe_payment_id)
- Queuing the subscription confirmation email after checkout

Stripe delivers at least once and in no particular order. Handlers therefore
look up before they write, and a failing handler returns an error so Stripe
redelivers the event later.
"""

import logging
from datetime import datetime, timezone
from enum import Enum

import stripe

from catalyst.services.email_service import send_subscription_confirmation
from catalyst.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type):
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


# ──────────────────────────────────────────────
# Payload helpers (old and new Stripe API shapes)
# ──────────────────────────────────────────────

def _first_item(sub_data):
    items = sub_data.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def _period_ts(sub_data, key):
    """Read current_period_start/end from a subscription.

    Newer API versions moved the period bounds from the subscription top
    level to items.data[0]; check both.
    """
    return sub_data.get(key) or _first_item(sub_data).get(key)


def _to_datetime(ts):
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def extract_period_end(sub_data):
    return _to_datetime(_period_ts(sub_data, "current_period_end"))


def extract_period_start(sub_data):
    return _to_datetime(_period_ts(sub_data, "current_period_start"))


def plan_type_for(sub_data):
    """'monthly' for a monthly price, 'yearly' otherwise."""
    price = _first_item(sub_data).get("price") or {}
    recurring = price.get("recurring") or {}
    return "monthly" if recurring.get("interval") == "month" else "yearly"


def invoice_subscription_id(invoice):
    """Subscription id of an invoice (top level, or parent details on newer APIs)."""
    sub_id = invoice.get("subscription")
    if sub_id:
        return sub_id if isinstance(sub_id, str) else sub_id.get("id")
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def invoice_payment_id(invoice):
    """Payment intent id of an invoice.

    Newer API versions list payments under invoice.payments instead of a
    top-level payment_intent. Returns None if neither is present.
    """
    payment_intent = invoice.get("payment_intent")
    if payment_intent:
        return payment_intent if isinstance(payment_intent, str) else payment_intent.get("id")
    payments = (invoice.get("payments") or {}).get("data") or []
    for entry in payments:
        intent = (entry.get("payment") or {}).get("payment_intent")
        if intent:
            return intent
    return None


def _amount(invoice):
    return (invoice.get("amount_paid") or 0) / 100


# ──────────────────────────────────────────────
# Reconciler
# ──────────────────────────────────────────────

class PaymentReconciler:
    """Applies verified Stripe events to the local ledger.

    Args:
        billing:        StripeClient (or anything with the same resources).
        store:          LedgerStore.
        mailer:         EmailQueue used for the confirmation email.
        webhook_secret: Stripe endpoint signing secret.
        retry_policy:   RetryPolicy for the recurring-payment store calls.
    """

    def __init__(self, billing, store, mailer, webhook_secret, retry_policy=None):
        self.billing = billing
        self.store = store
        self.mailer = mailer
        self.webhook_secret = webhook_secret
        self.retry_policy = retry_policy or RetryPolicy()
        self._handlers = {
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            EventKind.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            EventKind.SETUP_INTENT_SUCCEEDED: self._handle_setup_intent_succeeded,
            EventKind.UNKNOWN: self._ignore,
        }

    # --- Verification ---

    def verify_event(self, payload, sig_header):
        """Verify the Stripe signature and construct the event.

        Raises stripe.SignatureVerificationError on a missing or invalid
        signature and ValueError on a malformed payload.
        """
        if not sig_header:
            raise stripe.SignatureVerificationError(
                "Missing Stripe-Signature header", sig_header, payload
            )
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)

    # --- Dispatch ---

    def handle_event(self, event):
        """Process a verified event.

        Returns (success: bool, message: str). A False result means the
        handler failed and Stripe should redeliver.
        """
        event_id = event["id"]
        event_type = event["type"]

        if self.store.event_processed(event_id):
            logger.info(f"Duplicate webhook event {event_id}, skipping")
            return True, "already_processed"

        kind = EventKind.from_type(event_type)
        handler = self._handlers[kind]
        logger.info(f"Handling webhook event {event_id} ({event_type})")

        try:
            handler(event["data"]["object"])
        except Exception as e:
            logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
            self.store.rollback()
            return False, str(e)

        self.store.record_event(event_id, event_type)
        return True, "processed"

    def _retry(self, fn, *args, **kwargs):
        """Store call under the retry policy, rolled back between attempts."""
        return self.retry_policy.call(
            fn, *args, before_retry=self.store.rollback, **kwargs
        )

    # --- Handlers ---

    def _ignore(self, obj):
        logger.info(f"Unhandled event type for object {obj.get('object')} {obj.get('id')}, acknowledging")

    def _handle_checkout_completed(self, session):
        """checkout.session.completed -> Subscription + first Payment, then email."""
        user_id = session.get("client_reference_id")
        stripe_subscription_id = session.get("subscription")

        if not user_id or not stripe_subscription_id:
            logger.warning(
                f"checkout.session.completed {session.get('id')} missing "
                f"client_reference_id or subscription"
            )
            return

        if self.store.get_subscription(stripe_subscription_id):
            logger.info(f"Subscription {stripe_subscription_id} already recorded, skipping checkout")
            return

        sub = self.billing.subscriptions.retrieve(stripe_subscription_id)

        invoice_id = session.get("invoice") or sub.get("latest_invoice")
        if not invoice_id:
            raise ValueError(f"Checkout session {session.get('id')} has no invoice")
        invoice = self.billing.invoices.retrieve(invoice_id)

        payment_id = invoice_payment_id(invoice) or invoice["id"]
        plan_type = plan_type_for(sub)

        subscription, payment = self.store.create_subscription_and_payment(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            plan_type=plan_type,
            start_date=extract_period_start(sub),
            end_date=extract_period_end(sub),
            stripe_payment_id=payment_id,
            stripe_invoice_id=invoice["id"],
            amount=_amount(invoice),
        )
        logger.info(
            f"Recorded subscription {stripe_subscription_id} and payment "
            f"{payment_id} for user {user_id}"
        )

        self._queue_confirmation(user_id, session, plan_type)

    def _queue_confirmation(self, user_id, session, plan_type):
        """Best effort: a failure here never undoes the ledger write."""
        try:
            profile = self.store.get_profile(user_id)
            details = session.get("customer_details") or {}
            email = (profile.email if profile else None) or details.get("email")
            if not email:
                logger.warning(f"No email address for user {user_id}, confirmation not sent")
                return
            if profile and profile.first_name:
                name = profile.first_name
            else:
                name = (details.get("name") or "").split(" ")[0] or None
            send_subscription_confirmation(self.mailer, email, name, plan_type)
        except Exception as e:
            logger.error(f"Failed to queue confirmation email for user {user_id}: {e}")

    def _handle_subscription_deleted(self, sub_data):
        """customer.subscription.deleted -> expired / cancelled."""
        stripe_subscription_id = sub_data.get("id")
        end_date = extract_period_end(sub_data) or _to_datetime(sub_data.get("ended_at"))

        sub = self.store.mark_expired(stripe_subscription_id, end_date)
        if sub is None:
            logger.warning(
                f"subscription.deleted: no local record for sub={stripe_subscription_id}"
            )
            return
        logger.info(f"Marked subscription {stripe_subscription_id} as expired")

    def _handle_invoice_payment_succeeded(self, invoice):
        """invoice.payment_succeeded -> Payment row (deduped) + renewal."""
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            return

        payment_id = invoice_payment_id(invoice)
        if not payment_id:
            logger.error(f"Invoice {invoice.get('id')} has no payment intent, skipping")
            return

        local_sub = self._retry(self.store.get_subscription, stripe_subscription_id)
        if local_sub is None:
            logger.warning(
                f"invoice.payment_succeeded: no local record for sub={stripe_subscription_id}"
            )
            return
        local_sub_id = local_sub.id
        user_id = local_sub.user_id

        stripe_sub = self.billing.subscriptions.retrieve(stripe_subscription_id)
        end_date = extract_period_end(stripe_sub)

        if self._retry(self.store.payment_exists, payment_id):
            logger.info(f"Payment record already exists for payment intent {payment_id}")
        else:
            self._retry(
                self.store.add_payment,
                user_id=user_id,
                subscription_id=local_sub_id,
                stripe_payment_id=payment_id,
                stripe_invoice_id=invoice.get("id"),
                amount=_amount(invoice),
            )

        self._retry(self.store.mark_renewed, local_sub_id, payment_id, end_date)
        logger.info(f"Processed recurring payment for subscription {stripe_subscription_id}")

    def _handle_invoice_payment_failed(self, invoice):
        """invoice.payment_failed -> inactive / failed. No Payment row."""
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            return

        sub = self._retry(self.store.mark_payment_failed, stripe_subscription_id)
        if sub is None:
            logger.warning(
                f"invoice.payment_failed: no local record for sub={stripe_subscription_id}"
            )
            return
        logger.info(f"Payment failure processed for subscription {stripe_subscription_id}")

    def _handle_setup_intent_succeeded(self, setup_intent):
        """setup_intent.succeeded -> new card becomes the default everywhere."""
        payment_method = setup_intent.get("payment_method")
        customer_id = setup_intent.get("customer")
        if not payment_method or not customer_id:
            logger.error(f"Setup intent {setup_intent.get('id')} missing payment method or customer")
            return

        self.billing.customers.update(
            customer_id,
            params={"invoice_settings": {"default_payment_method": payment_method}},
        )

        subscriptions = self.billing.subscriptions.list(
            params={"customer": customer_id, "status": "active"}
        )
        for subscription in subscriptions.get("data") or []:
            self.billing.subscriptions.update(
                subscription["id"],
                params={"default_payment_method": payment_method},
            )

        logger.info(
            f"Updated default payment method for customer {customer_id} to {payment_method}"
        )
