"""Newsletter subscriptions and SendGrid event handling."""

import base64
import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from catalyst.errors import ValidationError
from catalyst.extensions import db, email_queue
from catalyst.models.newsletter import NewsletterSubscriber
from catalyst.models.user_profile import UserProfile
from catalyst.services.email_service import send_newsletter_welcome

logger = logging.getLogger(__name__)

# Simple email regex - not exhaustive, just sanity-check
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

UNSUBSCRIBE_EVENTS = ("unsubscribe", "group_unsubscribe")


def _link_profile(subscriber, subscribed):
    profile = UserProfile.query.filter_by(email=subscriber.email).first()
    if profile is None:
        return
    profile.newsletter_subscribed = subscribed
    if subscribed:
        subscriber.user_id = profile.user_id


def subscribe(email, name, source):
    """Subscribe or reactivate an address.

    Returns (subscriber, created). Raises ValidationError for bad input or
    an address that is already active.
    """
    email = (email or "").strip().lower()
    name = (name or "").strip()
    source = (source or "").strip()

    if not email or not name or not source:
        raise ValidationError("Email, name, and source are required")
    if not EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email address")

    now = datetime.now(timezone.utc)
    subscriber = NewsletterSubscriber.query.filter_by(email=email).first()

    if subscriber is not None:
        if subscriber.status == "active":
            raise ValidationError("This email is already subscribed to our newsletter")

        subscriber.status = "active"
        subscriber.name = name
        subscriber.source = source
        subscriber.subscribed_at = now
        subscriber.unsubscribed_at = None
        _link_profile(subscriber, True)
        db.session.commit()

        _queue_welcome(email, name, welcome_back=True)
        logger.info(f"Reactivated newsletter subscriber {subscriber.id}")
        return subscriber, False

    subscriber = NewsletterSubscriber(
        email=email,
        name=name,
        source=source,
        status="active",
        subscribed_at=now,
    )
    db.session.add(subscriber)
    _link_profile(subscriber, True)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("This email is already subscribed to our newsletter")

    _queue_welcome(email, name, welcome_back=False)
    logger.info(f"New newsletter subscriber {subscriber.id} from {source}")
    return subscriber, True


def _queue_welcome(email, name, welcome_back):
    try:
        send_newsletter_welcome(email_queue, email, name, welcome_back=welcome_back)
    except Exception as e:
        logger.error(f"Failed to queue newsletter welcome for {email}: {e}")


def unsubscribe(email, when=None):
    """Mark an address unsubscribed. Returns the subscriber or None."""
    subscriber = NewsletterSubscriber.query.filter_by(
        email=(email or "").strip().lower()
    ).first()
    if subscriber is None:
        logger.info("Unsubscribe for unknown newsletter address, ignoring")
        return None
    if subscriber.status == "unsubscribed":
        return subscriber

    subscriber.status = "unsubscribed"
    subscriber.unsubscribed_at = when or datetime.now(timezone.utc)
    _link_profile(subscriber, False)
    db.session.commit()
    logger.info(f"Newsletter subscriber {subscriber.id} unsubscribed")
    return subscriber


# ──────────────────────────────────────────────
# SendGrid event webhook
# ──────────────────────────────────────────────

def verify_sendgrid_signature(payload, signature, timestamp, signing_key):
    """HMAC-SHA256 over timestamp + raw body, base64 encoded."""
    if not signature or not timestamp or not signing_key:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    digest = hmac.new(
        signing_key.encode("utf-8"),
        timestamp.encode("utf-8") + payload,
        hashlib.sha256,
    ).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def process_email_events(events, newsletter_group_id):
    """Apply a batch of SendGrid events. Returns the number of unsubscribes."""
    unsubscribed = 0
    for event in events:
        kind = event.get("event")
        email = event.get("email")

        if kind in UNSUBSCRIBE_EVENTS:
            group_id = event.get("asm_group_id")
            if group_id is not None and str(group_id) != str(newsletter_group_id):
                continue
            ts = event.get("timestamp")
            when = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None
            if unsubscribe(email, when):
                unsubscribed += 1
        elif kind == "bounce":
            logger.error(f"Email bounced for {email}: {event.get('reason')}")
        elif kind == "spamreport":
            logger.warning(f"Spam report from {email}")
        else:
            logger.debug(f"SendGrid event {kind} for {email}")
    return unsubscribed
