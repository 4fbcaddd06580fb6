"""Billing ledger models.

- Subscription: local projection of one Stripe subscription. Rows change
  status instead of being deleted.
- Payment: one row per captured invoice/charge. Append-only.

Both are written only by the webhook reconciliation path (plus the
cancellation stamp); Stripe stays the source of truth.
"""

import uuid
from datetime import datetime, timezone

from catalyst.extensions import db


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow():
    return datetime.now(timezone.utc)


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    STATUSES = ["active", "inactive", "expired"]
    PAYMENT_STATUSES = ["active", "failed", "cancelled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    status = db.Column(db.String(20), nullable=False)  # active | inactive | expired
    payment_status = db.Column(
        db.String(20), nullable=False
    )  # active | failed | cancelled
    plan_type = db.Column(db.String(20))  # monthly | yearly
    start_date = db.Column(db.DateTime(timezone=True))
    end_date = db.Column(db.DateTime(timezone=True))
    last_payment_id = db.Column(db.String(255))
    last_payment_date = db.Column(db.DateTime(timezone=True))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    payments = db.relationship(
        "Payment", back_populates="subscription", lazy="dynamic"
    )

    def extend_end_date(self, new_end):
        """Move end_date forward only. Renewals never shorten access."""
        if new_end is None:
            return
        current = as_utc(self.end_date)
        if current is None or as_utc(new_end) > current:
            self.end_date = new_end

    def to_dict(self):
        def _iso(value):
            value = as_utc(value)
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "plan_type": self.plan_type,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "last_payment_id": self.last_payment_id,
            "last_payment_date": _iso(self.last_payment_date),
            "cancelled_at": _iso(self.cancelled_at),
        }

    def __repr__(self):
        return f"<Subscription {self.stripe_subscription_id} ({self.status}/{self.payment_status})>"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    status = db.Column(db.String(20), nullable=False, default="successful")
    stripe_payment_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # payment intent id (invoice id when the invoice has none)
    stripe_invoice_id = db.Column(db.String(255))
    stripe_payment_status = db.Column(
        db.String(20), nullable=False, default="succeeded"
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.stripe_payment_id} {self.amount}>"
