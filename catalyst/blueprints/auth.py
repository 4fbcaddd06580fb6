"""
Auth blueprint - /api/auth/*

Registration, login, profile, Google OAuth profile sync, password reset.
Accounts live with the identity provider; responses carry our own app
token alongside whatever session the provider issued.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from catalyst.extensions import db, limiter
from catalyst.models.user_profile import UserProfile
from catalyst.services import auth_service
from catalyst.services.identity_service import IdentityError
from catalyst.services.token_service import sign_token

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _payload():
    return request.get_json(silent=True) or {}


@auth_bp.route("/register", methods=["POST"])
@limiter.limit("10 per minute")
def register():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    try:
        profile = auth_service.register(
            email=email,
            password=data.get("password") or "",
            first_name=(data.get("firstName") or "").strip(),
            last_name=(data.get("lastName") or "").strip(),
            terms_accepted=bool(data.get("termsAccepted")),
        )
    except (SQLAlchemyError, IdentityError) as e:
        logger.error(f"Registration failed for {email}: {e}", exc_info=True)
        return jsonify({"error": "Registration failed"}), 500

    return jsonify({
        "message": "User registered successfully",
        "token": sign_token(profile.user_id, profile.email),
        "userProfile": profile.to_dict(),
    }), 201


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    session, profile = auth_service.login(email, data.get("password") or "")
    if session is None:
        return jsonify({"error": "Invalid email or password"}), 401

    user = session.get("user") or {}
    return jsonify({
        "message": "Login successful",
        "token": sign_token(user.get("id"), user.get("email") or email),
        "session": {
            "access_token": session.get("access_token"),
            "refresh_token": session.get("refresh_token"),
            "expires_in": session.get("expires_in"),
        },
        "userProfile": profile.to_dict() if profile else None,
    })


@auth_bp.route("/profile", methods=["GET"])
@login_required
def get_profile():
    profile = UserProfile.query.filter_by(user_id=current_user.id).first()
    if profile is None:
        return jsonify({"error": "User profile not found"}), 404
    return jsonify({"userProfile": profile.to_dict()})


@auth_bp.route("/profile", methods=["PATCH"])
@login_required
def update_profile():
    profile = auth_service.update_profile(current_user.id, _payload())
    if profile is None:
        return jsonify({"error": "User profile not found"}), 404
    return jsonify({"userProfile": profile.to_dict()})


@auth_bp.route("/google-callback", methods=["POST"])
@login_required
def google_callback():
    """Create or refresh the profile of a user who signed in with Google.

    The user id always comes from the verified token, never the body.
    """
    data = _payload()
    try:
        profile, created = auth_service.upsert_oauth_profile(
            user_id=current_user.id,
            email=data.get("email") or current_user.email,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            google_id=data.get("google_id"),
        )
    except (SQLAlchemyError, IdentityError) as e:
        db.session.rollback()
        logger.error(f"Error in Google callback processing: {e}", exc_info=True)
        return jsonify({"error": "Failed to process Google callback"}), 500

    if created:
        logger.info(f"Created profile for Google user {current_user.id}")
    return jsonify({"success": True, "profile": profile.to_dict()})


@auth_bp.route("/reset-password", methods=["POST"])
@limiter.limit("5 per hour")
def reset_password():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    try:
        auth_service.request_password_reset(email, data.get("redirectTo"))
    except IdentityError as e:
        logger.error(f"Error generating recovery link: {e}")
        return jsonify({"error": "Failed to send reset password email"}), 500

    # Same answer for unknown emails to prevent enumeration.
    return jsonify({"success": True})
