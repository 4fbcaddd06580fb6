"""Billing ledger store - every read/write the billing code makes.

Responsible for:
- Looking up and creating user profiles / Stripe customer references
- Creating subscription + first payment rows atomically (checkout)
- Appending payment rows, deduplicated on the Stripe payment id
- Subscription status transitions (renewed, failed, expired, cancelled)
- Recording processed Stripe events

Each write commits its own transaction and rolls back on failure before
re-raising, so a caller's retry always starts from a clean session.
"""

import logging
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from catalyst.models.billing import Payment, Subscription, utcnow
from catalyst.models.stripe_event import StripeEvent
from catalyst.models.user_profile import UserProfile

logger = logging.getLogger(__name__)


class LedgerStore:
    """Thin repository over the Flask-SQLAlchemy session."""

    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def rollback(self):
        self.session.rollback()

    # ── Profiles ─────────────────────────────────

    def get_profile(self, user_id):
        return UserProfile.query.filter_by(user_id=user_id).first()

    def get_profile_by_email(self, email):
        return UserProfile.query.filter_by(email=email).first()

    def get_or_create_profile(self, user_id, email):
        """Return the profile for user_id, creating a bare one if missing."""
        profile = self.get_profile(user_id)
        if profile:
            return profile

        profile = UserProfile(user_id=user_id, email=email or "")
        self.session.add(profile)
        try:
            self._commit()
        except IntegrityError:
            # Concurrent request created it first
            return self.get_profile(user_id)
        logger.info(f"Created bare profile for user {user_id}")
        return profile

    def set_stripe_customer(self, user_id, stripe_customer_id):
        profile = self.get_profile(user_id)
        if profile is None:
            return None
        profile.stripe_customer_id = stripe_customer_id
        self._commit()
        return profile

    # ── Subscriptions ────────────────────────────

    def get_subscription(self, stripe_subscription_id):
        return Subscription.query.filter_by(
            stripe_subscription_id=stripe_subscription_id
        ).first()

    def create_subscription_and_payment(self, user_id, stripe_subscription_id,
                                        plan_type, start_date, end_date,
                                        stripe_payment_id, stripe_invoice_id,
                                        amount):
        """Insert the Subscription and its first Payment in one transaction."""
        now = utcnow()
        sub = Subscription(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            status="active",
            payment_status="active",
            plan_type=plan_type,
            start_date=start_date or now,
            end_date=end_date,
            last_payment_id=stripe_payment_id,
            last_payment_date=now,
        )
        self.session.add(sub)
        self.session.flush()

        payment = Payment(
            user_id=user_id,
            subscription_id=sub.id,
            amount=Decimal(str(amount)),
            date=now,
            status="successful",
            stripe_payment_id=stripe_payment_id,
            stripe_invoice_id=stripe_invoice_id,
            stripe_payment_status="succeeded",
        )
        self.session.add(payment)
        self._commit()
        return sub, payment

    def mark_renewed(self, subscription_id, stripe_payment_id, end_date):
        sub = self.session.get(Subscription, subscription_id)
        if sub is None:
            return None
        sub.status = "active"
        sub.payment_status = "active"
        sub.last_payment_id = stripe_payment_id
        sub.last_payment_date = utcnow()
        sub.extend_end_date(end_date)
        self._commit()
        return sub

    def mark_payment_failed(self, stripe_subscription_id):
        sub = self.get_subscription(stripe_subscription_id)
        if sub is None:
            return None
        sub.status = "inactive"
        sub.payment_status = "failed"
        self._commit()
        return sub

    def mark_expired(self, stripe_subscription_id, end_date):
        sub = self.get_subscription(stripe_subscription_id)
        if sub is None:
            return None
        sub.status = "expired"
        sub.payment_status = "cancelled"
        if end_date is not None:
            sub.end_date = end_date
        self._commit()
        return sub

    def mark_cancel_requested(self, stripe_subscription_id):
        """Stamp cancelled_at. Access continues until end_date."""
        sub = self.get_subscription(stripe_subscription_id)
        if sub is None:
            return None
        sub.cancelled_at = utcnow()
        self._commit()
        return sub

    def apply_provider_state(self, stripe_subscription_id, status,
                             payment_status, end_date):
        sub = self.get_subscription(stripe_subscription_id)
        if sub is None:
            return None
        sub.status = status
        sub.payment_status = payment_status
        if end_date is not None:
            sub.end_date = end_date
        self._commit()
        return sub

    # ── Payments ─────────────────────────────────

    def payment_exists(self, stripe_payment_id):
        return (
            Payment.query.filter_by(stripe_payment_id=stripe_payment_id).first()
            is not None
        )

    def add_payment(self, user_id, subscription_id, stripe_payment_id,
                    stripe_invoice_id, amount):
        """Append a Payment. Returns None if the payment id is already recorded."""
        now = utcnow()
        payment = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=Decimal(str(amount)),
            date=now,
            status="successful",
            stripe_payment_id=stripe_payment_id,
            stripe_invoice_id=stripe_invoice_id,
            stripe_payment_status="succeeded",
        )
        self.session.add(payment)
        try:
            self._commit()
        except IntegrityError:
            logger.info(f"Payment {stripe_payment_id} already recorded (unique constraint)")
            return None
        return payment

    # ── Stripe events ────────────────────────────

    def event_processed(self, stripe_event_id):
        return (
            StripeEvent.query.filter_by(stripe_event_id=stripe_event_id).first()
            is not None
        )

    def record_event(self, stripe_event_id, event_type):
        self.session.add(StripeEvent(
            stripe_event_id=stripe_event_id,
            event_type=event_type,
        ))
        try:
            self._commit()
        except IntegrityError:
            logger.info(f"Stripe event {stripe_event_id} recorded concurrently")
