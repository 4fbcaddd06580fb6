"""User profile model.

One row per identity-provider user. Authentication itself lives with the
identity provider; this table holds the app-side profile and the Stripe
customer reference (null until the first checkout).
"""

import uuid

from catalyst.extensions import db


class UserProfile(db.Model):
    __tablename__ = "user_profiles"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(64), unique=True, nullable=False, index=True
    )  # identity-provider user id
    email = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(120))
    last_name = db.Column(db.String(120))
    role = db.Column(db.String(50), nullable=False, default="user")
    terms_accepted = db.Column(db.Boolean, nullable=False, default=False)
    newsletter_subscribed = db.Column(db.Boolean, nullable=False, default=False)
    google_id = db.Column(db.String(255))
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def display_name(self):
        return self.first_name or "there"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "terms_accepted": self.terms_accepted,
            "newsletter_subscribed": self.newsletter_subscribed,
            "has_billing_customer": self.stripe_customer_id is not None,
        }

    def __repr__(self):
        return f"<UserProfile {self.email}>"
