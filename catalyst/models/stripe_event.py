"""Stripe event model (idempotency table).

Every fully applied webhook event is recorded by its Stripe event ID. Before
processing an event the reconciler checks this table; a hit returns 200
immediately so Stripe redeliveries never re-run side effects such as the
confirmation email.
"""

import uuid

from catalyst.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "invoice.payment_succeeded"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
