"""Newsletter subscriber model.

One row per email address. Unsubscribing flips status rather than deleting
so a later resubscribe can be recognised as a "welcome back".
"""

import uuid

from catalyst.extensions import db


class NewsletterSubscriber(db.Model):
    __tablename__ = "newsletter_users"

    SOURCES = ["market-analysis", "investment-ideas", "website"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    source = db.Column(db.String(50), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="active"
    )  # active | unsubscribed
    user_id = db.Column(db.String(64), nullable=True)  # linked profile, if any
    subscribed_at = db.Column(db.DateTime(timezone=True))
    unsubscribed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "source": self.source,
            "status": self.status,
            "subscribed_at": self.subscribed_at.isoformat() if self.subscribed_at else None,
        }

    def __repr__(self):
        return f"<NewsletterSubscriber {self.email} ({self.status})>"
