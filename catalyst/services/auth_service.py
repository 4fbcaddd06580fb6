"""Request authentication and account flows.

Bearer tokens are accepted in two forms: our own short-lived app token
(checked locally) and a Supabase access token (checked with the identity
provider). Either resolves to an AuthenticatedUser for Flask-Login.
"""

import logging

from flask import current_app
from flask_login import UserMixin
from sqlalchemy.exc import SQLAlchemyError

from catalyst.errors import ValidationError
from catalyst.extensions import db, email_queue
from catalyst.models.user_profile import UserProfile
from catalyst.services.email_service import send_password_reset_email, send_welcome_email
from catalyst.services.identity_service import IdentityError
from catalyst.services.token_service import verify_token

logger = logging.getLogger(__name__)


class AuthenticatedUser(UserMixin):
    """The caller of the current request, as far as the identity layer knows."""

    def __init__(self, user_id, email=None):
        self.id = user_id
        self.email = email

    def __repr__(self):
        return f"<AuthenticatedUser {self.id}>"


def identity_client():
    return current_app.extensions["identity"]


def user_from_authorization_header(header):
    if not header or not header.startswith("Bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    if not token:
        return None

    claims = verify_token(token)
    if claims and claims.get("id"):
        return AuthenticatedUser(claims["id"], claims.get("email"))

    user = identity_client().get_user(token)
    if user and user.get("id"):
        return AuthenticatedUser(user["id"], user.get("email"))

    logger.info("Bearer token rejected")
    return None


# ──────────────────────────────────────────────
# Account flows
# ──────────────────────────────────────────────

def register(email, password, first_name, last_name, terms_accepted):
    """Create identity user + profile. Returns the UserProfile.

    If the profile insert fails the identity user is deleted again so a
    retry with the same email can succeed.
    """
    errors = []
    if not email:
        errors.append("Email is required.")
    if not password:
        errors.append("Password is required.")
    elif len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if not terms_accepted:
        errors.append("Terms must be accepted.")
    if errors:
        raise ValidationError(" ".join(errors))

    identity = identity_client()
    try:
        user = identity.sign_up(
            email, password,
            metadata={"first_name": first_name, "last_name": last_name},
        )
    except IdentityError as e:
        raise ValidationError(str(e))

    profile = UserProfile(
        user_id=user["id"],
        email=email,
        first_name=first_name or None,
        last_name=last_name or None,
        role="user",
        terms_accepted=True,
    )
    db.session.add(profile)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"Profile creation failed for {email}, removing identity user", exc_info=True)
        identity.delete_user(user["id"])
        raise

    try:
        send_welcome_email(email_queue, email, profile.display_name)
    except Exception as e:
        logger.error(f"Failed to queue welcome email for {email}: {e}")

    logger.info(f"Registered user {profile.user_id}")
    return profile


def login(email, password):
    """Password sign-in. Returns (identity session dict, UserProfile or None)."""
    if not email or not password:
        raise ValidationError("Email and password are required.")
    try:
        session = identity_client().sign_in(email, password)
    except IdentityError as e:
        logger.info(f"Login failed for {email}: {e}")
        return None, None

    user = session.get("user") or {}
    profile = UserProfile.query.filter_by(user_id=user.get("id")).first()
    return session, profile


def upsert_oauth_profile(user_id, email, first_name=None, last_name=None, google_id=None):
    """Create or refresh a profile after an OAuth (Google) sign-in.

    Returns (profile, created).
    """
    if not user_id or not email:
        raise ValidationError("Missing required user data")

    profile = UserProfile.query.filter_by(user_id=user_id).first()
    if profile is None:
        profile = UserProfile(
            user_id=user_id,
            email=email,
            first_name=first_name or None,
            last_name=last_name or None,
            role="user",
            google_id=google_id,
            terms_accepted=True,
        )
        db.session.add(profile)
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.error(f"OAuth profile creation failed for {user_id}", exc_info=True)
            identity_client().delete_user(user_id)
            raise

        try:
            send_welcome_email(email_queue, email, first_name or "there")
        except Exception as e:
            logger.error(f"Failed to queue welcome email for {email}: {e}")
        return profile, True

    profile.email = email
    profile.first_name = first_name or profile.first_name
    profile.last_name = last_name or profile.last_name
    profile.google_id = google_id or profile.google_id
    db.session.commit()
    return profile, False


def update_profile(user_id, data):
    profile = UserProfile.query.filter_by(user_id=user_id).first()
    if profile is None:
        return None
    for field in ("first_name", "last_name"):
        if field in data:
            setattr(profile, field, (data.get(field) or "").strip() or None)
    if "newsletter_subscribed" in data:
        profile.newsletter_subscribed = bool(data["newsletter_subscribed"])
    db.session.commit()
    return profile


def request_password_reset(email, redirect_to=None):
    """Send a recovery link if the email belongs to a profile.

    Unknown emails are silently ignored to prevent enumeration.
    """
    if not email:
        raise ValidationError("Email is required.")
    profile = UserProfile.query.filter_by(email=email).first()
    if profile is None:
        logger.info("Password reset requested for unknown email")
        return False

    link = identity_client().generate_recovery_link(email, redirect_to)
    send_password_reset_email(email_queue, email, link)
    logger.info(f"Password reset email queued for user {profile.user_id}")
    return True
